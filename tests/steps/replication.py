#!/usr/bin/env python
# -*- coding: utf-8 -*-

from behave import then, when, use_step_matcher

import steps.helpers as helpers
from pgfailover.health import HealthProber
from pgfailover.replication import ReplicationController

use_step_matcher("re")


def _controller(context):
    config = helpers.make_config(context)
    ctl = ReplicationController(config, context.primary, context.standby, HealthProber(config))
    if getattr(context, 'channel', None) is None:
        context.channel = ctl.channel()
    return ctl


@when('we (?P<operation>pause|resume|verify) the replication channel')
def step_channel_operation(context, operation):
    ctl = _controller(context)
    helpers.catch(context, getattr(ctl, operation), context.channel)


@when('we promote the standby with lag threshold (?P<threshold>[0-9]+) bytes(?P<force> and force)?')
def step_promote(context, threshold, force):
    ctl = _controller(context)
    helpers.catch(context, ctl.promote, context.channel, int(threshold), force=bool(force))


@when('we (?P<operation>freeze|thaw) the replication source')
def step_freeze(context, operation):
    ctl = _controller(context)
    helpers.catch(context, getattr(ctl, f'{operation}_source'), context.channel)


@then('channel state is "(?P<state>[a-z]+)"')
def step_check_channel_state(context, state):
    assert context.channel.state == state, f'channel state is {context.channel.state}'


@then('channel lag is (?P<lag>[0-9]+|unknown)')
def step_check_channel_lag(context, lag):
    expected = None if lag == 'unknown' else int(lag)
    assert context.channel.lag_bytes == expected, f'channel lag is {context.channel.lag_bytes}'


@then('returned lag is (?P<lag>[0-9]+|unknown)')
def step_check_returned_lag(context, lag):
    expected = None if lag == 'unknown' else int(lag)
    assert context.result == expected, f'returned lag is {context.result}'


@then('verify reports table "(?P<table>[a-z0-9_.]+)" as "(?P<state>[a-z_]+)"')
def step_check_table(context, table, state):
    assert context.error is None, f'verify failed: {context.error}'
    assert context.result.get(table) == state, f'tables are {context.result}'


@then('replication channel is still present on standby')
def step_check_channel_present(context):
    ctl = _controller(context)
    tables = ctl.verify(context.channel)
    assert tables, 'verify returned no tables'
