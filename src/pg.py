"""
Pg wrapper module. PostgresAdmin class defined here.
"""
# encoding: utf-8

import contextlib
import logging
import threading
from functools import wraps

import psycopg2
import psycopg2.errors
import psycopg2.extensions
from psycopg2.sql import SQL, Identifier

from .admin import DatabaseAdmin
from .exceptions import ConnectivityError

DEC2INT_TYPE = psycopg2.extensions.new_type(
    psycopg2.extensions.DECIMAL.values, 'DEC2INT', lambda value, curs: int(value) if value is not None else None
)

psycopg2.extensions.register_type(DEC2INT_TYPE)


def _get_names(cur):
    return [r[0].lower() for r in cur.description]


def _plain_format(cur):
    names = _get_names(cur)
    for row in cur.fetchall():
        yield dict(zip(names, tuple(row)))


def make_conn_string(config, section):
    """
    Build libpq connection string for node described in config section
    """
    params = {
        'host': config.get(section, 'host'),
        'port': config.get(section, 'port'),
        'dbname': config.get(section, 'dbname'),
        'user': config.get(section, 'user'),
        'connect_timeout': config.get('global', 'connect_timeout'),
        'application_name': 'pgfailover',
    }
    password = config.get(section, 'password')
    if password:
        params['password'] = password
    statement_timeout = config.getint('global', 'statement_timeout_ms')
    if statement_timeout:
        params['options'] = f'-c statement_timeout={statement_timeout}'
    conn_string = psycopg2.extensions.make_dsn(**params)
    append = config.get(section, 'append_conn_string')
    if append:
        conn_string = f'{conn_string} {append}'
    return conn_string


def _split_qualified(name):
    if '.' in name:
        schema, relname = name.split('.', 1)
    else:
        schema, relname = 'public', name
    return schema, relname


def connectivity_errors(func):
    """
    Decorator translating connection level psycopg2 errors into ConnectivityError
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            self.close()
            raise ConnectivityError(f'{self.host}: {str(exc).strip()}') from exc

    return wrapper


class PostgresAdmin(DatabaseAdmin):
    """
    DatabaseAdmin implementation talking to one node via psycopg2
    """

    def __init__(self, config, section):
        self.config = config
        self.section = section
        self.host = config.get(section, 'host')
        self.dbname = config.get(section, 'dbname')
        self._conn_string = make_conn_string(config, section)
        self._terminate_on_freeze = config.getboolean('replication', 'terminate_sessions_on_freeze')
        self._conn = None
        self._conn_lock = threading.Lock()

    def _connect(self):
        with self._conn_lock:
            if self._conn is None or self._conn.closed:
                logging.debug('Connecting to %s (%s).', self.host, self.section)
                self._conn = psycopg2.connect(self._conn_string)
                self._conn.autocommit = True
            return self._conn

    def close(self):
        with self._conn_lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except psycopg2.Error:
                    pass
            self._conn = None

    def _exec_query(self, query, **kwargs):
        conn = self._connect()
        cur = conn.cursor()
        if not isinstance(query, str):
            query = query.as_string(conn)
        cur.execute(query, kwargs or None)
        return cur

    def _get(self, query, **kwargs):
        with contextlib.closing(self._exec_query(query, **kwargs)) as cur:
            return list(_plain_format(cur))

    def _get_one(self, query, **kwargs):
        rows = self._get(query, **kwargs)
        return rows[0] if rows else None

    def _exec_without_result(self, query, **kwargs):
        with contextlib.closing(self._exec_query(query, **kwargs)):
            pass

    @connectivity_errors
    def ping(self):
        with contextlib.closing(self._exec_query('SELECT 42;')) as cur:
            return cur.fetchone()[0] == 42

    @connectivity_errors
    def is_read_only(self):
        """
        Node is read only if it is in recovery or default_transaction_read_only
        is set on database level. SHOW is not enough since ALTER DATABASE
        affects new sessions only.
        """
        row = self._get_one(
            """SELECT pg_is_in_recovery() AS in_recovery,
                   EXISTS (
                       SELECT 1 FROM pg_db_role_setting s
                       JOIN pg_database d ON d.oid = s.setdatabase
                       WHERE d.datname = current_database() AND s.setrole = 0
                       AND 'default_transaction_read_only=on' = ANY(s.setconfig)
                   ) AS db_read_only"""
        )
        return bool(row['in_recovery'] or row['db_read_only'])

    @connectivity_errors
    def set_read_only(self, enabled):
        if enabled:
            query = SQL('ALTER DATABASE {db} SET default_transaction_read_only = on')
        else:
            query = SQL('ALTER DATABASE {db} RESET default_transaction_read_only')
        logging.info('%s default_transaction_read_only on %s.', 'Setting' if enabled else 'Resetting', self.host)
        self._exec_without_result(query.format(db=Identifier(self.dbname)))
        if enabled and self._terminate_on_freeze:
            # Sessions opened before ALTER DATABASE are still writable
            self.terminate_client_sessions()

    @connectivity_errors
    def terminate_client_sessions(self):
        rows = self._get(
            """SELECT pid, pg_terminate_backend(pid) AS terminated
               FROM pg_stat_activity
               WHERE datname = current_database()
               AND pid != pg_backend_pid()
               AND backend_type = 'client backend'"""
        )
        logging.info('Terminated %d client session(s) on %s.', len(rows), self.host)
        return len(rows)

    @connectivity_errors
    def get_active_connection_count(self):
        row = self._get_one("SELECT count(*) AS cnt FROM pg_stat_activity WHERE state = 'active'")
        return int(row['cnt'])

    @connectivity_errors
    def get_slot(self, slot_name):
        return self._get_one(
            """SELECT active,
                   pg_wal_lsn_diff(pg_current_wal_lsn(), confirmed_flush_lsn)::bigint AS lag_bytes
               FROM pg_replication_slots
               WHERE slot_name = %(slot)s""",
            slot=slot_name,
        )

    @connectivity_errors
    def drop_slot(self, slot_name):
        logging.info('Dropping slot %s on %s.', slot_name, self.host)
        self._exec_without_result('SELECT pg_drop_replication_slot(%(slot)s)', slot=slot_name)

    @connectivity_errors
    def get_subscription(self, name):
        return self._get_one(
            """SELECT s.subenabled AS enabled,
                   EXTRACT(epoch FROM now() - st.last_msg_receipt_time)::float AS last_message_age
               FROM pg_subscription s
               JOIN pg_database d ON d.oid = s.subdbid AND d.datname = current_database()
               LEFT JOIN pg_stat_subscription st ON st.subid = s.oid AND st.relid IS NULL
               WHERE s.subname = %(name)s""",
            name=name,
        )

    @connectivity_errors
    def get_subscription_tables(self, name):
        return self._get(
            """SELECT srrelid::regclass::text AS table, srsubstate::text AS state
               FROM pg_subscription_rel
               WHERE srsubid = (
                   SELECT s.oid FROM pg_subscription s
                   JOIN pg_database d ON d.oid = s.subdbid AND d.datname = current_database()
                   WHERE s.subname = %(name)s
               )
               ORDER BY 1""",
            name=name,
        )

    @connectivity_errors
    def enable_subscription(self, name):
        sub = Identifier(name)
        row = self._get_one('SELECT subslotname IS NULL AS detached FROM pg_subscription WHERE subname = %(name)s', name=name)
        if row is not None and row['detached']:
            # Interrupted drop leaves subscription without slot, ENABLE refuses it
            slot = self.config.get('replication', 'slot')
            logging.warning('Subscription %s has no slot, reattaching %s.', name, slot)
            self._exec_without_result(SQL('ALTER SUBSCRIPTION {sub} SET (slot_name = %(slot)s)').format(sub=sub), slot=slot)
        logging.info('Enabling subscription %s on %s.', name, self.host)
        self._exec_without_result(SQL('ALTER SUBSCRIPTION {sub} ENABLE').format(sub=sub))

    @connectivity_errors
    def disable_subscription(self, name):
        logging.info('Disabling subscription %s on %s.', name, self.host)
        self._exec_without_result(SQL('ALTER SUBSCRIPTION {sub} DISABLE').format(sub=Identifier(name)))

    @connectivity_errors
    def drop_subscription(self, name):
        """
        Detach the remote slot first so that DROP does not need to reach
        the old primary.
        """
        sub = Identifier(name)
        current = self.get_subscription(name)
        if current is not None and current['enabled']:
            self._exec_without_result(SQL('ALTER SUBSCRIPTION {sub} DISABLE').format(sub=sub))
        logging.info('Dropping subscription %s on %s.', name, self.host)
        self._exec_without_result(SQL('ALTER SUBSCRIPTION {sub} SET (slot_name = NONE)').format(sub=sub))
        self._exec_without_result(SQL('DROP SUBSCRIPTION {sub}').format(sub=sub))

    @connectivity_errors
    def list_sequences(self, exclude_schemas):
        rows = self._get(
            """SELECT schemaname, sequencename FROM pg_sequences
               WHERE schemaname != ALL(%(exclude)s)
               ORDER BY schemaname, sequencename""",
            exclude=list(exclude_schemas),
        )
        return [f"{row['schemaname']}.{row['sequencename']}" for row in rows]

    @connectivity_errors
    def get_sequence_value(self, name):
        schema, relname = _split_qualified(name)
        row = self._get_one(
            SQL('SELECT last_value FROM {schema}.{seq}').format(schema=Identifier(schema), seq=Identifier(relname))
        )
        return int(row['last_value'])

    @connectivity_errors
    def set_sequence_value(self, name, value):
        schema, relname = _split_qualified(name)
        conn = self._connect()
        regclass = SQL('{schema}.{seq}').format(schema=Identifier(schema), seq=Identifier(relname)).as_string(conn)
        row = self._get_one('SELECT setval(%(seq)s::regclass, %(value)s) AS value', seq=regclass, value=int(value))
        return int(row['value'])


def node_admins(config):
    """
    Return (primary, standby) admins built from config
    """
    for section in ('primary', 'standby'):
        if not config.get(section, 'host'):
            raise ValueError(f'host is not set in [{section}]')
    primary = PostgresAdmin(config, 'primary')
    standby = PostgresAdmin(config, 'standby')
    if primary.host == standby.host and config.get('primary', 'port') == config.get('standby', 'port'):
        raise ValueError('primary and standby point to the same node')
    return primary, standby
