#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
In-memory database nodes and pooler driven by behave steps
"""

import threading

from kazoo.client import KazooState
from kazoo.exceptions import ConnectionLoss

from pgfailover.admin import DatabaseAdmin, ProxyAdmin
from pgfailover.exceptions import ConnectivityError, PgFailoverException
from pgfailover.zk import ZookeeperException

DROP_NORMAL = 'normal'
# DROP applied, but the client lost the reply
DROP_AMBIGUOUS_APPLIED = 'ambiguous_applied'
# DROP lost together with the connection
DROP_AMBIGUOUS_LOST = 'ambiguous_lost'
# DROP applied, then the node became unreachable
DROP_AMBIGUOUS_UNREACHABLE = 'ambiguous_unreachable'


class FakeError(PgFailoverException):
    pass


class Faults(object):
    """
    Failure injection shared by fakes
    """

    def __init__(self, name, events):
        self.name = name
        self.events = events
        self.reachable = True
        self.calls = []
        self.broken = {}
        self.transient = {}
        self.hooks = {}

    def call(self, method):
        self.calls.append(method)
        self.events.append(f'{self.name}.{method}')
        if not self.reachable:
            raise ConnectivityError(f'{self.name}: could not connect to server')
        if self.transient.get(method, 0) > 0:
            self.transient[method] -= 1
            raise ConnectivityError(f'{self.name}: server closed the connection unexpectedly')
        if method in self.broken:
            raise FakeError(self.broken[method])

    def after(self, method):
        hook = self.hooks.get(method)
        if hook is not None:
            hook()

    def count(self, method):
        return len([c for c in self.calls if c == method])


class FakeDatabase(DatabaseAdmin):
    def __init__(self, host, events):
        self.host = host
        self.faults = Faults(host, events)
        self.in_recovery = False
        self.read_only = False
        self.active_connections = 3
        self.slots = {}
        self.subscriptions = {}
        self.sequences = {}
        self.drop_behavior = DROP_NORMAL

    def _call(self, method):
        self.faults.call(method)

    def ping(self):
        self._call('ping')
        return True

    def is_read_only(self):
        self._call('is_read_only')
        return self.in_recovery or self.read_only

    def set_read_only(self, enabled):
        self._call('set_read_only')
        self.read_only = enabled
        self.faults.after('set_read_only')

    def get_active_connection_count(self):
        self._call('get_active_connection_count')
        return self.active_connections

    def get_slot(self, slot_name):
        self._call('get_slot')
        slot = self.slots.get(slot_name)
        return dict(slot) if slot is not None else None

    def drop_slot(self, slot_name):
        self._call('drop_slot')
        self.slots.pop(slot_name, None)

    def get_subscription(self, name):
        self._call('get_subscription')
        sub = self.subscriptions.get(name)
        if sub is None:
            return None
        return {'enabled': sub['enabled'], 'last_message_age': sub['last_message_age']}

    def get_subscription_tables(self, name):
        self._call('get_subscription_tables')
        sub = self.subscriptions.get(name, {'tables': {}})
        return [{'table': table, 'state': state} for table, state in sorted(sub['tables'].items())]

    def enable_subscription(self, name):
        self._call('enable_subscription')
        self.subscriptions[name]['enabled'] = True

    def disable_subscription(self, name):
        self._call('disable_subscription')
        self.subscriptions[name]['enabled'] = False

    def drop_subscription(self, name):
        self._call('drop_subscription')
        if self.drop_behavior == DROP_AMBIGUOUS_LOST:
            raise ConnectivityError(f'{self.host}: timeout expired')
        self.subscriptions.pop(name, None)
        self.faults.after('drop_subscription')
        if self.drop_behavior == DROP_AMBIGUOUS_APPLIED:
            raise ConnectivityError(f'{self.host}: timeout expired')
        if self.drop_behavior == DROP_AMBIGUOUS_UNREACHABLE:
            self.faults.reachable = False
            raise ConnectivityError(f'{self.host}: timeout expired')

    def list_sequences(self, exclude_schemas):
        self._call('list_sequences')
        return sorted(name for name in self.sequences if name.split('.', 1)[0] not in exclude_schemas)

    def get_sequence_value(self, name):
        self._call('get_sequence_value')
        if name not in self.sequences:
            raise FakeError(f'relation "{name}" does not exist')
        return self.sequences[name]

    def set_sequence_value(self, name, value):
        self._call('set_sequence_value')
        self.sequences[name] = value
        return value


class FakeProxy(ProxyAdmin):
    def __init__(self, upstream, database, events):
        self.faults = Faults('pgbouncer', events)
        self.upstream = upstream
        self.pending_upstream = upstream
        self.database = database
        self.paused = False
        self.apply_on_reload = True
        self.clients = 5

    def _call(self, method):
        self.faults.call(method)

    def pause(self):
        self._call('pause')
        self.paused = True
        self.faults.after('pause')

    def resume(self):
        self._call('resume')
        self.paused = False

    def reload(self):
        self._call('reload')
        if self.apply_on_reload:
            self.upstream = self.pending_upstream
        self.faults.after('reload')

    def set_upstream(self, host):
        self._call('set_upstream')
        self.pending_upstream = host

    def show_pools(self):
        self._call('show_pools')
        return [
            {'database': 'pgbouncer', 'user': 'pgbouncer', 'cl_waiting': 0, 'sv_active': 0, 'cl_active': 1},
            {
                'database': self.database,
                'user': 'app',
                'cl_waiting': self.clients if self.paused else 0,
                'sv_active': 0 if self.paused else 2,
                'cl_active': 0 if self.paused else self.clients,
            },
        ]

    def show_databases(self):
        self._call('show_databases')
        return [
            {'name': 'pgbouncer', 'host': None, 'port': 6432, 'paused': 0},
            {'name': self.database, 'host': self.upstream, 'port': 5432, 'paused': 1 if self.paused else 0},
        ]


def healthy_pair(events, primary_host='pg-primary', standby_host='pg-standby'):
    """
    Replicated pair with zero lag, one table and one sequence
    """
    primary = FakeDatabase(primary_host, events)
    primary.slots['dr_slot'] = {'active': True, 'lag_bytes': 0}
    primary.sequences['public.orders_id_seq'] = 1500

    standby = FakeDatabase(standby_host, events)
    standby.subscriptions['dr_subscription'] = {
        'enabled': True,
        'last_message_age': 1.5,
        'tables': {'public.orders': 'r'},
    }
    standby.sequences['public.orders_id_seq'] = 1000
    proxy = FakeProxy(primary_host, 'appdb', events)
    return primary, standby, proxy


class FakeEnsemble(object):
    """
    Stands for a ZooKeeper ensemble shared by several operators
    """

    def __init__(self):
        self.holders = {}
        self.nodes = {}
        self.available = True

    def factory(self, contender):
        def connect(config):
            if not self.available:
                raise ZookeeperException('could not connect to localhost:2181')
            return FakeZookeeper(self, contender)

        return connect


class FakeZookeeper(object):
    def __init__(self, ensemble, contender):
        self.ensemble = ensemble
        self.contender = contender

    def try_acquire_lock(self, name):
        holder = self.ensemble.holders.get(name)
        if holder is not None and holder != self.contender:
            return False
        self.ensemble.holders[name] = self.contender
        return True

    def get_lock_contenders(self, name):
        holder = self.ensemble.holders.get(name)
        return [holder] if holder else []

    def write(self, key, data):
        self.ensemble.nodes[key] = data

    def close(self):
        for name, holder in list(self.ensemble.holders.items()):
            if holder == self.contender:
                del self.ensemble.holders[name]


class KazooEnsemble(object):
    """
    In-memory znodes and lock queues behind stubbed kazoo clients
    """

    def __init__(self):
        self.nodes = {}
        self.queues = {}
        self.available = True
        self.clients = []

    def client(self, **options):
        client = FakeKazooClient(self, options)
        self.clients.append(client)
        return client


class FakeKazooLock(object):
    def __init__(self, client, path, identifier):
        self.client = client
        self.path = path
        self.identifier = identifier

    def _queue(self):
        return self.client.ensemble.queues.setdefault(self.path, [])

    def contenders(self):
        self.client.check()
        return list(self._queue())

    def acquire(self, blocking=True, timeout=None):
        self.client.check()
        queue = self._queue()
        if queue and queue[0] != self.identifier:
            return False
        if self.identifier not in queue:
            queue.append(self.identifier)
        return True

    def release(self):
        queue = self._queue()
        if self.identifier in queue:
            queue.remove(self.identifier)
            return True
        return False


class FakeKazooClient(object):
    """
    Stands for kazoo.client.KazooClient
    """

    def __init__(self, ensemble, options):
        self.ensemble = ensemble
        self.options = options
        self.connected = False
        self.state = KazooState.LOST
        self.listeners = []
        self.closed = False

    def check(self):
        if not self.connected:
            raise ConnectionLoss()

    def start_async(self):
        started = threading.Event()
        if self.ensemble.available:
            self.connected = True
            self.state = KazooState.CONNECTED
        # connection attempt is over either way
        started.set()
        return started

    def stop(self):
        self.connected = False
        self.state = KazooState.LOST

    def close(self):
        self.closed = True

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        self.listeners.remove(listener)

    def Lock(self, path, identifier=None):
        return FakeKazooLock(self, path, identifier)

    def ensure_path(self, path):
        self.check()
        self.ensemble.nodes.setdefault(path, b'')

    def set(self, path, value):
        self.check()
        self.ensemble.nodes[path] = value
