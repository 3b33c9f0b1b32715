"""
Controlled failover of logically replicated PostgreSQL behind pgbouncer
"""
# encoding: utf-8

import logging

from configparser import RawConfigParser

DEFAULTS: dict[str, dict] = {
    'global': {
        'log_file': None,
        'log_level': 'info',
        'run_log_dir': '/var/log/pgfailover/runs',
        'lock_backend': 'file',
        'lock_dir': '/var/run/pgfailover',
        'zk_hosts': 'localhost:2181',
        'zk_lockpath_prefix': '/pgfailover/',
        'zk_timeout': 5.0,
        'zk_connect_max_delay': 60,
        'zk_auth': 'no',
        'zk_username': None,
        'zk_password': None,
        'zk_ssl': 'no',
        'keyfile': None,
        'certfile': None,
        'ca_cert': None,
        'verify_certs': 'no',
        'connect_timeout': 5,
        'statement_timeout_ms': 30000,
        'retries': 3,
        'retry_delay': 1.0,
        'retry_backoff': 2.0,
    },
    'primary': {
        'host': None,
        'port': 5432,
        'dbname': 'postgres',
        'user': 'postgres',
        'password': None,
        'append_conn_string': None,
    },
    'standby': {
        'host': None,
        'port': 5432,
        'dbname': 'postgres',
        'user': 'postgres',
        'password': None,
        'append_conn_string': None,
    },
    'replication': {
        'publication': 'dr_publication',
        'subscription': 'dr_subscription',
        'slot': 'dr_slot',
        'lag_threshold': 100 * 1024 * 1024,
        'verify_retries': 3,
        'stale_message_age': 300,
        'drop_remote_slot': 'no',
        'terminate_sessions_on_freeze': 'yes',
    },
    'sequences': {
        'buffer': 10000,
        'workers': 4,
        'exclude_schemas': 'pg_catalog,information_schema',
        'fail_on_errors': 'no',
    },
    'proxy': {
        'host': 'localhost',
        'port': 6432,
        'user': 'pgbouncer',
        'dbname': 'pgbouncer',
        'password': None,
        'database': '*',
    },
    'commands': {
        'swap_upstream': "sed -i -E 's/host=[^ ]+/host=%h/' /etc/pgbouncer/pgbouncer.ini",
    },
    'debug': {
        'log_func_name': 'no',
    },
}


def read_config(filename=None, options=None):
    """
    Merge config with default values and cmd options
    """
    config = RawConfigParser()
    if not filename and options is not None:
        filename = options.config_file
    if filename:
        config.read(filename)

    #
    # Appending default config with default values.
    #
    for section in DEFAULTS:
        if not config.has_section(section):
            config.add_section(section)
        for key, value in DEFAULTS[section].items():
            if not config.has_option(section, key):
                config.set(section, key, value)

    #
    # Rewriting global config with parameters from command line.
    #
    if options:
        for key, value in vars(options).items():
            if value is not None and config.has_option('global', key):
                config.set('global', key, value)

    return config


def init_logging(config):
    """
    Set log level and format
    """
    level = getattr(logging, config.get('global', 'log_level').upper())
    logging.getLogger('kazoo').setLevel(logging.WARN)
    format = '{asctime} {levelname:<8}: {message}'
    if config.getboolean('debug', 'log_func_name'):
        format = '{asctime} {levelname:<8}: {funcName:<30}: {message}'
    logging.basicConfig(level=level, format=format, style='{', filename=config.get('global', 'log_file'))
