#!/usr/bin/env python
# -*- coding: utf-8 -*-

import yaml
from behave import given, then, use_step_matcher

import steps.helpers as helpers
from pgfailover.helpers import request_cancel

use_step_matcher("re")

TARGET = r'(?P<target>primary|standby|pgbouncer)'


@given('a healthy replicated pair behind pgbouncer')
def step_healthy_pair(context):
    # built in before_scenario, the step documents it
    assert context.primary.slots['dr_slot']['lag_bytes'] == 0
    assert context.proxy.upstream == context.primary.host


@given('pgfailover config')
def step_config(context):
    for section, values in yaml.safe_load(context.text).items():
        context.overrides.setdefault(section, {}).update(values)


@given('(?P<node>primary|standby) is unreachable')
def step_node_unreachable(context, node):
    helpers.target(context, node).faults.reachable = False


@given('pgbouncer admin console is unreachable')
def step_proxy_unreachable(context):
    context.proxy.faults.reachable = False


@given('replication lag on primary is (?P<lag>[0-9]+) bytes')
def step_lag(context, lag):
    context.primary.slots['dr_slot']['lag_bytes'] = int(lag)


@given('replication slot on primary is absent')
def step_no_slot(context):
    context.primary.slots.clear()


@given('(?P<node>primary|standby) sequence "(?P<name>[a-z0-9_.]+)" has value (?P<value>[0-9]+)')
def step_sequence_value(context, node, name, value):
    helpers.target(context, node).sequences[name] = int(value)


@given('(?P<node>primary|standby) has no sequence "(?P<name>[a-z0-9_.]+)"')
def step_no_sequence(context, node, name):
    helpers.target(context, node).sequences.pop(name, None)


@given('subscription on standby is (?P<state>enabled|disabled|absent)')
def step_subscription_state(context, state):
    if state == 'absent':
        context.standby.subscriptions.clear()
    else:
        context.standby.subscriptions['dr_subscription']['enabled'] = state == 'enabled'


@given('subscription on standby got last message (?P<age>[0-9.]+) seconds ago')
def step_subscription_age(context, age):
    context.standby.subscriptions['dr_subscription']['last_message_age'] = float(age)


@given('subscription table "(?P<table>[a-z0-9_.]+)" on standby is in state "(?P<code>[idfsr])"')
def step_subscription_table(context, table, code):
    context.standby.subscriptions['dr_subscription']['tables'][table] = code


@given('subscription drop on standby is (?P<behavior>normal|ambiguous_applied|ambiguous_lost|ambiguous_unreachable)')
def step_drop_behavior(context, behavior):
    context.standby.drop_behavior = behavior


@given(TARGET + ' fails on "(?P<method>[a-z_]+)" with "(?P<message>[^"]+)"')
def step_broken(context, target, method, message):
    helpers.target(context, target).faults.broken[method] = message


@given(TARGET + ' loses connection (?P<count>[0-9]+) times? on "(?P<method>[a-z_]+)"')
def step_transient(context, target, count, method):
    helpers.target(context, target).faults.transient[method] = int(count)


@given('operator cancels the run right after ' + TARGET + ' "(?P<method>[a-z_]+)"')
def step_cancel_after(context, target, method):
    helpers.target(context, target).faults.hooks[method] = request_cancel


@given('operator has cancelled the run before it started')
def step_cancel_before(context):
    request_cancel()


@given('(?P<node>primary|standby) becomes read only right after ' + TARGET.replace('target', 'source') + ' "(?P<method>[a-z_]+)"')
def step_read_only_after(context, node, source, method):
    db = helpers.target(context, node)

    def freeze():
        db.read_only = True

    helpers.target(context, source).faults.hooks[method] = freeze


@given('(?P<node>primary|standby) becomes unreachable right after ' + TARGET.replace('target', 'source') + ' "(?P<method>[a-z_]+)"')
def step_unreachable_after(context, node, source, method):
    db = helpers.target(context, node)

    def lose():
        db.faults.reachable = False

    helpers.target(context, source).faults.hooks[method] = lose


@given('pgbouncer does not apply upstream on reload')
def step_reload_noop(context):
    context.proxy.apply_on_reload = False


@then('(?P<node>primary|standby) is (?P<neg>not )?read only')
def step_check_read_only(context, node, neg):
    db = helpers.target(context, node)
    assert db.read_only is (not neg), f'{node} read_only is {db.read_only}'


@then('pgbouncer is (?P<neg>not )?paused')
def step_check_paused(context, neg):
    assert context.proxy.paused is (not neg), f'pgbouncer paused is {context.proxy.paused}'


@then('pgbouncer upstream is "(?P<host>[a-z0-9.-]+)"')
def step_check_upstream(context, host):
    assert context.proxy.upstream == host, f'pgbouncer upstream is {context.proxy.upstream}'


@then('subscription on standby is now (?P<state>enabled|disabled|absent)')
def step_check_subscription(context, state):
    sub = context.standby.subscriptions.get('dr_subscription')
    if state == 'absent':
        assert sub is None, f'subscription is present: {sub}'
    else:
        assert sub is not None, 'subscription is absent'
        assert sub['enabled'] is (state == 'enabled'), f'subscription enabled is {sub["enabled"]}'


@then(TARGET + ' "(?P<method>[a-z_]+)" was called (?P<count>[0-9]+) times?')
def step_check_called(context, target, method, count):
    actual = helpers.target(context, target).faults.count(method)
    assert actual == int(count), f'{target}.{method} was called {actual} times'


@then(TARGET + ' "(?P<method>[a-z_]+)" was never called')
def step_check_not_called(context, target, method):
    actual = helpers.target(context, target).faults.count(method)
    assert actual == 0, f'{target}.{method} was called {actual} times'


@then('"(?P<first>[a-z0-9_.-]+)" happened before "(?P<second>[a-z0-9_.-]+)"')
def step_check_order(context, first, second):
    events = context.events
    assert first in events, f'{first} did not happen: {events}'
    assert second in events, f'{second} did not happen: {events}'
    last_first = len(events) - 1 - events[::-1].index(first)
    last_second = len(events) - 1 - events[::-1].index(second)
    assert last_first < last_second, f'{first} happened after {second}: {events}'


@then('operation failed with (?P<error>[A-Za-z]+)')
def step_check_error(context, error):
    assert context.error is not None, f'operation succeeded with {context.result}'
    assert type(context.error).__name__ == error, f'operation failed with {type(context.error).__name__}: {context.error}'


@then('operation succeeded')
def step_check_success(context):
    assert context.error is None, f'operation failed with {type(context.error).__name__}: {context.error}'


@then('error message contains "(?P<text>[^"]+)"')
def step_check_error_message(context, text):
    assert text in str(context.error), f'"{text}" not in "{context.error}"'


@then('error remediation contains "(?P<text>[^"]+)"')
def step_check_error_remediation(context, text):
    remediation = getattr(context.error, 'remediation', None) or ''
    assert text in remediation, f'"{text}" not in "{remediation}"'
