"""
Pooler control: pause, resume and upstream redirection.
"""
# encoding: utf-8

import logging

from .admin import ProxyAdmin
from .exceptions import StateConflictError
from .types import PoolStatus, ProxyState

ADMIN_DATABASE = 'pgbouncer'


def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class ProxyController(object):
    """
    Stateless wrapper over ProxyAdmin. Everything is queried live.

    Callers must never resume the pooler while its upstream still points
    to a frozen node: this class does not check it.
    """

    def __init__(self, config, admin: ProxyAdmin):
        self._admin = admin
        self._database = config.get('proxy', 'database')
        self._log = logging.getLogger('proxy')

    def pause(self):
        """
        Stop handing out server connections. In-flight transactions finish,
        new clients wait in queue without timeout.
        """
        self._log.info('Pausing pooler.')
        self._admin.pause()
        if self._paused() is False:
            raise StateConflictError('pooler did not report paused state after PAUSE')

    def resume(self):
        self._log.info('Resuming pooler.')
        self._admin.resume()
        if self._paused():
            raise StateConflictError('pooler still reports paused state after RESUME')

    def set_upstream(self, host):
        """
        Rewrite upstream host. Not applied until reload().
        """
        self._log.info('Setting pooler upstream to %s.', host)
        self._admin.set_upstream(host)

    def reload(self):
        self._log.info('Reloading pooler configuration.')
        self._admin.reload()

    def swap_upstream(self, host):
        """
        Set upstream, reload and verify that the live upstream is host
        """
        self.set_upstream(host)
        self.reload()
        hosts = self.upstream_hosts()
        if hosts != {host}:
            raise StateConflictError(f'pooler upstream is {sorted(hosts)} after reload, expected {host}')

    def _database_rows(self):
        rows = [r for r in self._admin.show_databases() if r.get('name') != ADMIN_DATABASE]
        if self._database != '*':
            rows = [r for r in rows if r.get('name') == self._database]
        return rows

    def _paused(self):
        rows = self._database_rows()
        if not rows:
            return None
        return any(_as_int(r.get('paused')) for r in rows)

    def upstream_hosts(self):
        return {r['host'] for r in self._database_rows() if r.get('host')}

    def upstream(self):
        hosts = self.upstream_hosts()
        if not hosts:
            return None
        return ','.join(sorted(hosts))

    def status(self) -> dict[str, PoolStatus]:
        pools = {}
        for row in self._admin.show_pools():
            if row.get('database') == ADMIN_DATABASE:
                continue
            name = '%s/%s' % (row.get('database'), row.get('user'))
            pools[name] = {
                'queued': _as_int(row.get('cl_waiting')),
                'active_server': _as_int(row.get('sv_active')),
                'active_client': _as_int(row.get('cl_active')),
            }
        return pools

    def state(self) -> ProxyState:
        return ProxyState(
            upstream=self.upstream(),
            paused=bool(self._paused()),
            reachable=True,
            pools=self.status(),
        )
