"""
Run lock: one failover per primary/standby pair at a time.
"""
# encoding: utf-8

import logging
import os
import time

from lockfile import AlreadyLocked, LockFailed
from lockfile.pidlockfile import PIDLockFile

from . import helpers
from .exceptions import RunLockError
from .zk import Zookeeper, ZookeeperException


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        # EPERM: process exists but belongs to someone else
        return True
    return True


class RunLock(object):
    """
    Base class. Concurrent invocation for the same pair is rejected, not queued.
    """

    def __init__(self, key):
        self.key = key

    def acquire(self):
        raise NotImplementedError

    def release(self):
        raise NotImplementedError

    def publish(self, state, run_id=None):
        """
        Make current run state visible to other operators. No-op by default.
        """
        pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *_):
        self.release()


class FileRunLock(RunLock):
    """
    PID file lock in lock_dir. Lock left by a dead process is broken.
    """

    def __init__(self, config, key):
        super().__init__(key)
        self.path = os.path.join(config.get('global', 'lock_dir'), f'pgfailover_{key}.pid')
        self._pidfile = PIDLockFile(self.path, timeout=0)

    def acquire(self):
        try:
            self._pidfile.acquire()
        except AlreadyLocked:
            pid = self._pidfile.read_pid()
            if pid is not None and _pid_alive(pid):
                raise RunLockError(f'failover of {self.key} is already running (pid {pid})')
            logging.warning('Breaking stale run lock %s left by pid %s.', self.path, pid)
            self._pidfile.break_lock()
            try:
                self._pidfile.acquire()
            except AlreadyLocked:
                raise RunLockError(f'failover of {self.key} was started concurrently')
        except LockFailed as exc:
            raise RunLockError(f'could not create run lock {self.path}: {exc}') from exc
        logging.debug('Run lock %s acquired.', self.path)

    def release(self):
        if self._pidfile.is_locked() and self._pidfile.i_am_locking():
            self._pidfile.release()
            logging.debug('Run lock %s released.', self.path)


class ZookeeperRunLock(RunLock):
    """
    Ephemeral kazoo lock, shared by operators on different hosts.
    Run state is published next to it.
    """

    def __init__(self, config, key, zk_factory=None):
        super().__init__(key)
        self._config = config
        self._zk_factory = zk_factory or Zookeeper
        self._zk = None

    def _lock_name(self):
        return Zookeeper.FAILOVER_LOCK_PATH % self.key

    def acquire(self):
        try:
            self._zk = self._zk_factory(self._config)
            acquired = self._zk.try_acquire_lock(self._lock_name())
        except ZookeeperException as exc:
            self._close()
            raise RunLockError(f'could not take run lock for {self.key} in ZK: {exc}') from exc
        if not acquired:
            holders = self._zk.get_lock_contenders(self._lock_name())
            self._close()
            raise RunLockError(f'failover of {self.key} is already running on {holders[0] if holders else "unknown"}')
        logging.debug('ZK run lock for %s acquired.', self.key)

    def publish(self, state, run_id=None):
        if self._zk is None:
            return
        data = {'state': state, 'run_id': run_id, 'host': helpers.get_hostname(), 'ts': time.time()}
        try:
            self._zk.write(Zookeeper.FAILOVER_STATE_PATH % self.key, data)
        except ZookeeperException as exc:
            logging.warning('Could not publish state %s to ZK: %s', state, exc)

    def _close(self):
        if self._zk is not None:
            self._zk.close()
            self._zk = None

    def release(self):
        self._close()


def make_run_lock(config, primary_host, standby_host):
    key = helpers.pair_key(primary_host, standby_host)
    backend = config.get('global', 'lock_backend')
    if backend == 'file':
        return FileRunLock(config, key)
    if backend == 'zookeeper':
        return ZookeeperRunLock(config, key)
    raise ValueError(f'unknown lock_backend {backend}')
