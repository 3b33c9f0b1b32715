"""
Narrow administrative interfaces to a database node and to the pooler.
Production adapters live in pg.py and pgbouncer.py.
"""
# encoding: utf-8

from abc import abstractmethod


class DatabaseAdmin(object):
    """
    Administrative access to one database node.
    Connectivity failures are raised as ConnectivityError.
    """

    host: str

    @abstractmethod
    def ping(self):
        raise NotImplementedError

    @abstractmethod
    def is_read_only(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def set_read_only(self, enabled: bool):
        raise NotImplementedError

    @abstractmethod
    def get_active_connection_count(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_slot(self, slot_name):
        """
        Return {'active': bool, 'lag_bytes': int | None} or None if slot is absent
        """
        raise NotImplementedError

    @abstractmethod
    def drop_slot(self, slot_name):
        raise NotImplementedError

    @abstractmethod
    def get_subscription(self, name):
        """
        Return {'enabled': bool, 'last_message_age': float | None} or None if absent
        """
        raise NotImplementedError

    @abstractmethod
    def get_subscription_tables(self, name):
        """
        Return list of {'table': str, 'state': <srsubstate code>}
        """
        raise NotImplementedError

    @abstractmethod
    def enable_subscription(self, name):
        raise NotImplementedError

    @abstractmethod
    def disable_subscription(self, name):
        raise NotImplementedError

    @abstractmethod
    def drop_subscription(self, name):
        raise NotImplementedError

    @abstractmethod
    def list_sequences(self, exclude_schemas):
        raise NotImplementedError

    @abstractmethod
    def get_sequence_value(self, name) -> int:
        raise NotImplementedError

    @abstractmethod
    def set_sequence_value(self, name, value):
        raise NotImplementedError


class ProxyAdmin(object):
    """
    Line-oriented admin console of the connection pooler.
    """

    @abstractmethod
    def pause(self):
        raise NotImplementedError

    @abstractmethod
    def resume(self):
        raise NotImplementedError

    @abstractmethod
    def reload(self):
        raise NotImplementedError

    @abstractmethod
    def set_upstream(self, host):
        raise NotImplementedError

    @abstractmethod
    def show_pools(self):
        """
        Return rows of SHOW POOLS as dicts
        """
        raise NotImplementedError

    @abstractmethod
    def show_databases(self):
        """
        Return rows of SHOW DATABASES as dicts
        """
        raise NotImplementedError
