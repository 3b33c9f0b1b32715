#!/usr/bin/env python
# -*- coding: utf-8 -*-

import glob
import os

from behave import given, then, use_step_matcher

import steps.helpers as helpers
from pgfailover.exceptions import RunRecordError
from pgfailover.runlog import load_run

use_step_matcher("re")


def _run_log_files(context):
    return glob.glob(os.path.join(context.tmpdir, 'runs', 'failover_*.jsonl'))


@given('run log directory can not be created')
def step_runlog_dir_broken(context):
    blocker = os.path.join(context.tmpdir, 'blocker')
    with open(blocker, 'w') as fobj:
        fobj.write('not a directory\n')
    context.overrides.setdefault('global', {})['run_log_dir'] = os.path.join(blocker, 'runs')


@given('run log becomes unwritable right after ' + r'(?P<target>primary|standby|pgbouncer)' + ' "(?P<method>[a-z_]+)"')
def step_runlog_breaks(context, target, method):
    def replace_with_directory():
        for path in _run_log_files(context):
            os.remove(path)
            os.mkdir(path)

    helpers.target(context, target).faults.hooks[method] = replace_with_directory


@given('run log file "(?P<name>[a-z_.]+)"')
def step_runlog_file(context, name):
    context.runlog_path = os.path.join(context.tmpdir, name)
    with open(context.runlog_path, 'w') as fobj:
        fobj.write(context.text)


@then('no run log was written')
def step_check_no_runlog(context):
    assert not _run_log_files(context), _run_log_files(context)


@then('loading the run log fails')
def step_check_load_fails(context):
    try:
        load_run(context.runlog_path)
    except RunRecordError:
        return
    raise AssertionError('run log was loaded')


@then('loaded run has outcome (?P<outcome>[a-z_]+|none) and (?P<count>[0-9]+) steps?')
def step_check_loaded(context, outcome, count):
    run, _ = load_run(context.runlog_path)
    expected = None if outcome == 'none' else outcome
    assert run.outcome == expected, f'outcome is {run.outcome}'
    assert len(run.steps) == int(count), f'steps are {run.steps}'
