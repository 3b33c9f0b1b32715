#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os

from pgfailover import read_config
from pgfailover.exceptions import PgFailoverException
from pgfailover.helpers import pair_key


def make_config(context):
    """
    Config pointing to fakes of the scenario, scratch dirs and no retry delays
    """
    config = read_config()
    config.set('primary', 'host', context.primary.host)
    config.set('standby', 'host', context.standby.host)
    config.set('global', 'run_log_dir', os.path.join(context.tmpdir, 'runs'))
    config.set('global', 'lock_dir', context.tmpdir)
    config.set('global', 'retry_delay', '0')
    for section, values in context.overrides.items():
        for key, value in values.items():
            config.set(section, key, str(value))
    return config


def catch(context, func, *args, **kwargs):
    """
    Call func keeping either its result or its error in context
    """
    context.result = None
    context.error = None
    try:
        context.result = func(*args, **kwargs)
    except PgFailoverException as exc:
        context.error = exc
    return context.result


def target(context, name):
    return {
        'primary': context.primary,
        'standby': context.standby,
        'pgbouncer': context.proxy,
    }[name]


def lock_path(context):
    key = pair_key(context.primary.host, context.standby.host)
    return os.path.join(context.tmpdir, f'pgfailover_{key}.pid')
