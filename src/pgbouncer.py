"""
Pgbouncer admin console wrapper. PgbouncerAdmin class defined here.
"""
# encoding: utf-8

import contextlib
import logging

import psycopg2
import psycopg2.extensions

from .admin import ProxyAdmin
from .command_manager import CommandManager
from .exceptions import ConnectivityError, PgFailoverException
from .pg import _plain_format

# Replies of admin console which mean the requested state is already reached
ALREADY_DONE_MESSAGES = {
    'PAUSE': ('already suspended/paused',),
    'RESUME': ('not paused/suspended',),
}


class UpstreamCommandError(PgFailoverException):
    """
    Upstream rewrite command exited with non-zero code
    """

    pass


class PgbouncerAdmin(ProxyAdmin):
    """
    ProxyAdmin implementation over pgbouncer admin console
    """

    def __init__(self, config, cmd_manager: CommandManager):
        self.config = config
        self._cmd_manager = cmd_manager
        self.database = config.get('proxy', 'database')
        params = {
            'host': config.get('proxy', 'host'),
            'port': config.get('proxy', 'port'),
            'user': config.get('proxy', 'user'),
            'dbname': config.get('proxy', 'dbname'),
            'connect_timeout': config.get('global', 'connect_timeout'),
        }
        password = config.get('proxy', 'password')
        if password:
            params['password'] = password
        self._conn_string = psycopg2.extensions.make_dsn(**params)
        self._conn = None

    def _connect(self):
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self._conn_string)
            # admin console does not support transactions
            self._conn.autocommit = True
        return self._conn

    def close(self):
        if self._conn is not None:
            try:
                self._conn.close()
            except psycopg2.Error:
                pass
        self._conn = None

    def _command(self, command, fetch=False):
        try:
            with contextlib.closing(self._connect().cursor()) as cur:
                logging.debug('pgbouncer: %s', command)
                cur.execute(command + ';')
                if fetch:
                    return list(_plain_format(cur))
                return None
        except psycopg2.Error as exc:
            message = str(exc).strip()
            for expected in ALREADY_DONE_MESSAGES.get(command, ()):
                if expected in message:
                    logging.info('pgbouncer replied "%s" on %s, state is already reached.', message, command)
                    return None
            if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)) and self._is_broken():
                self.close()
                raise ConnectivityError(f'pgbouncer: {message}') from exc
            raise

    def _is_broken(self):
        return self._conn is None or bool(self._conn.closed)

    def pause(self):
        self._command('PAUSE')

    def resume(self):
        self._command('RESUME')

    def reload(self):
        self._command('RELOAD')

    def set_upstream(self, host):
        ret = self._cmd_manager.swap_upstream(host, self.database)
        if ret != 0:
            raise UpstreamCommandError(f'swap_upstream command exited with code {ret}')

    def show_pools(self):
        return self._command('SHOW POOLS', fetch=True)

    def show_databases(self):
        return self._command('SHOW DATABASES', fetch=True)
