# encoding: utf-8
"""
Zookeeper wrapper module. Zookeeper class defined here.
"""

import json
import logging
import os

from kazoo.client import KazooClient, KazooState
from kazoo.exceptions import KazooException, LockTimeout
from kazoo.handlers.threading import KazooTimeoutError, SequentialThreadingHandler
from kazoo.recipe.lock import Lock
from kazoo.security import make_digest_acl

from . import helpers


class ZookeeperException(Exception):
    """Exception for wrapping all zookeeper connector inner exceptions"""


class Zookeeper(object):
    """
    Zookeeper class. Only holds failover locks and publishes run state.
    """

    FAILOVER_ROOT_PATH = 'failover'
    FAILOVER_LOCK_PATH = f'{FAILOVER_ROOT_PATH}/%s/lock'
    FAILOVER_STATE_PATH = f'{FAILOVER_ROOT_PATH}/%s/state'

    def __init__(self, config, lock_contender_name=None):
        self._lock_contender_name = lock_contender_name
        self._zk_hosts = config.get('global', 'zk_hosts')
        self._timeout = config.getfloat('global', 'zk_timeout')
        self._zk_connect_max_delay = config.getfloat('global', 'zk_connect_max_delay')
        self._zk_auth = config.getboolean('global', 'zk_auth')
        self._zk_ssl = config.getboolean('global', 'zk_ssl')
        self._verify_certs = config.getboolean('global', 'verify_certs')
        if self._zk_auth:
            self._zk_username = config.get('global', 'zk_username')
            self._zk_password = config.get('global', 'zk_password')
            if not self._zk_username or not self._zk_password:
                raise ZookeeperException('zk_username, zk_password required when zk_auth enabled')
        if self._zk_ssl:
            self._cert = config.get('global', 'certfile')
            self._key = config.get('global', 'keyfile')
            self._ca = config.get('global', 'ca_cert')
            if not self._cert or not self._key or not self._ca:
                raise ZookeeperException('certfile, keyfile, ca_cert required when zk_ssl enabled')
        self._locks = {}
        prefix = config.get('global', 'zk_lockpath_prefix')
        self._path_prefix = prefix.rstrip('/') + '/' if prefix else '/pgfailover/'
        if not self._init_client():
            raise ZookeeperException(f'could not connect to {self._zk_hosts}')

    def get_lock_contender_name(self):
        if self._lock_contender_name:
            return self._lock_contender_name
        return f'{helpers.get_hostname()}:{os.getpid()}'

    def _create_kazoo_client(self):
        conn_retry_options = {'max_tries': 10, 'delay': 0.5, 'backoff': 1.5, 'max_delay': self._zk_connect_max_delay}
        command_retry_options = {'max_tries': 0, 'delay': 0, 'backoff': 1, 'max_delay': 5}
        args = {
            'hosts': self._zk_hosts,
            'handler': SequentialThreadingHandler(),
            'timeout': self._timeout,
            'connection_retry': conn_retry_options,
            'command_retry': command_retry_options,
        }
        if self._zk_auth:
            acl = make_digest_acl(self._zk_username, self._zk_password, all=True)
            args.update(
                {
                    'default_acl': [acl],
                    'auth_data': [('digest', f'{self._zk_username}:{self._zk_password}')],
                }
            )
        if self._zk_ssl:
            args.update(
                {
                    'use_ssl': True,
                    'certfile': self._cert,
                    'keyfile': self._key,
                    'ca': self._ca,
                    'verify_certs': self._verify_certs,
                }
            )
        self._zk = KazooClient(**args)

    def _listener(self, state):
        if state == KazooState.LOST:
            # Session is gone, ephemeral lock nodes are gone with it
            logging.error('Connection to ZK lost, failover lock is not held anymore.')
            self._locks = {}
        elif state == KazooState.SUSPENDED:
            logging.warning('Being disconnected from ZK.')
        elif state == KazooState.CONNECTED:
            logging.info('Reconnected to ZK.')

    def _init_client(self) -> bool:
        self._create_kazoo_client()
        event = self._zk.start_async()
        event.wait(self._timeout)
        if not self._zk.connected:
            self._zk.stop()
            return False
        self._zk.add_listener(self._listener)
        return True

    def is_alive(self):
        return self._zk.state == KazooState.CONNECTED

    def _path(self, key):
        return self._path_prefix + key

    def _get_lock(self, name) -> Lock:
        if name not in self._locks:
            logging.debug('No lock instance for %s. Creating one.', name)
            self._locks[name] = self._zk.Lock(self._path(name), self.get_lock_contender_name())
        return self._locks[name]

    def get_lock_contenders(self, name):
        try:
            return self._get_lock(name).contenders()
        except (KazooException, KazooTimeoutError) as exc:
            raise ZookeeperException(exc)

    def try_acquire_lock(self, name):
        """
        Non-blocking acquire. Return False if somebody else holds the lock.
        """
        if not self.is_alive():
            raise ZookeeperException(f'not able to acquire {name} lock without alive connection')
        contenders = self.get_lock_contenders(name)
        if contenders:
            if contenders[0] == self.get_lock_contender_name():
                logging.debug('We already hold the %s lock.', name)
                return True
            logging.warning('Lock %s is already taken by %s.', name, contenders[0])
            return False
        try:
            return self._get_lock(name).acquire(blocking=False)
        except LockTimeout:
            return False
        except (KazooException, KazooTimeoutError) as exc:
            raise ZookeeperException(exc)

    def release_lock(self, name):
        lock = self._locks.pop(name, None)
        if lock is None:
            return False
        try:
            return lock.release()
        except (KazooException, KazooTimeoutError) as exc:
            raise ZookeeperException(exc)

    def write(self, key, data, preproc=json.dumps):
        path = self._path(key)
        value = preproc(data) if preproc else data
        try:
            self._zk.ensure_path(path)
            self._zk.set(path, value.encode())
        except (KazooException, KazooTimeoutError) as exc:
            raise ZookeeperException(exc)

    def close(self):
        for name in list(self._locks):
            try:
                self.release_lock(name)
            except ZookeeperException as exc:
                logging.warning('Could not release %s lock: %s', name, exc)
        self._zk.remove_listener(self._listener)
        self._zk.stop()
        self._zk.close()
