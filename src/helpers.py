"""
Some helper functions and decorators
"""

# encoding: utf-8

import json
import logging
import random
import re
import signal
import socket
import subprocess
import time
import traceback
from functools import wraps

from .exceptions import ConnectivityError

_should_run = True


def register_sigterm_handler():
    signal.signal(signal.SIGTERM, _sigterm_handler)
    signal.signal(signal.SIGINT, _sigterm_handler)
    _set_should_run(True)


def should_run():
    global _should_run
    return _should_run


def _sigterm_handler(*_):
    logging.warning('Cancellation requested by signal.')
    _set_should_run(False)


def _set_should_run(value):
    global _should_run
    _should_run = value


def request_cancel():
    _set_should_run(False)


def reset_cancel():
    _set_should_run(True)


def confirm(prompt='yes', no_raise=False):
    """
    prompt user for confirmation. Raise if doesnt match.
    """
    confirmation = input('type "%s" to continue: ' % prompt)
    if confirmation.lower() == prompt:
        return True
    if no_raise:
        return None
    raise RuntimeError('there was no confirmation')


def subprocess_call(cmd, fail_comment=None):
    """
    Run shell command, log its output on failure and return exit code
    """
    logging.debug(cmd)
    try:
        proc = subprocess.run(cmd, shell=True, capture_output=True, text=True)
    except OSError:
        logging.error("Could not run command '%s'", cmd)
        log_traceback()
        return -1
    if proc.returncode != 0:
        for line in (proc.stdout + proc.stderr).splitlines():
            logging.error(line.rstrip())
        if fail_comment:
            logging.error(fail_comment)
    return proc.returncode


def app_name_from_fqdn(fqdn):
    return fqdn.replace('.', '_').replace('-', '_')


def pair_key(primary_host, standby_host):
    """
    Lock key of the node pair, safe for file names and zk paths
    """
    key = '%s__%s' % (app_name_from_fqdn(primary_host), app_name_from_fqdn(standby_host))
    return re.sub(r'[^\w]', '_', key)


def get_hostname():
    """
    return fqdn of local machine
    """
    return socket.getfqdn()


def log_traceback(level=logging.ERROR):
    for line in traceback.format_exc().split('\n'):
        logging.log(level, line.rstrip())


def get_retrying(attempts, delay, event_name, func, backoff=1.5, retry_on=(ConnectivityError,)):
    """
    This function returns a wrapper retrying func on connectivity errors.
    At most `attempts` calls are made, sleeping exponentially growing
    delay in between. The last error is reraised.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        sleep_time = float(delay)
        for attempt in range(1, max(int(attempts), 1) + 1):
            try:
                return func(*args, **kwargs)
            except retry_on as exc:
                if attempt >= attempts:
                    logging.error('%s failed after %d attempt(s): %s', event_name, attempt, exc)
                    raise
                logging.warning('%s failed (attempt %d of %d): %s', event_name, attempt, attempts, exc)
            if sleep_time > 0:
                logging.debug(f'Waiting {sleep_time:.2f} before retrying {event_name}')
                time.sleep(sleep_time)
            sleep_time = backoff * sleep_time + 0.1 * random.random() * sleep_time

    return wrapper


def retry_from_config(config, event_name, func):
    return get_retrying(
        config.getint('global', 'retries'),
        config.getfloat('global', 'retry_delay'),
        event_name,
        func,
        backoff=config.getfloat('global', 'retry_backoff'),
    )


def append_json_line(path, data):
    """
    Append one json document as a line to path
    """
    with open(path, 'a') as fobj:
        fobj.write(json.dumps(data, sort_keys=True))
        fobj.write('\n')
        fobj.flush()


def read_json_lines(path):
    with open(path, 'r') as fobj:
        return [json.loads(line) for line in fobj if line.strip()]


def format_bytes(value):
    if value is None:
        return 'unknown'
    size = float(value)
    for unit in ('bytes', 'kB', 'MB', 'GB'):
        if abs(size) < 1024 or unit == 'GB':
            if unit == 'bytes':
                return '%d %s' % (size, unit)
            return '%.1f %s' % (size, unit)
        size /= 1024
    return str(value)

