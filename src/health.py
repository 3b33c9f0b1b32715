"""
Health probing of database nodes and of the pooler.
"""
# encoding: utf-8

import logging

from . import helpers
from .admin import DatabaseAdmin
from .exceptions import ConnectivityError
from .types import ROLE_PRIMARY, ROLE_STANDBY, HealthReport, ProxyState


class HealthProber(object):
    """
    Queries a node or the pooler for liveness and replication state.
    Never retries: retry policy belongs to the caller.
    """

    def __init__(self, config):
        self._slot = config.get('replication', 'slot')
        self._subscription = config.get('replication', 'subscription')
        self._stale_message_age = config.getfloat('replication', 'stale_message_age')

    def probe(self, db: DatabaseAdmin, role) -> HealthReport:
        report = HealthReport(host=db.host, role=role)
        try:
            db.ping()
            report.reachable = True
            report.read_only = db.is_read_only()
            report.active_connection_count = db.get_active_connection_count()
            if role == ROLE_PRIMARY:
                self._probe_slot(db, report)
            elif role == ROLE_STANDBY:
                self._probe_subscription(db, report)
        except ConnectivityError as exc:
            report.reachable = False
            report.error = str(exc)
            logging.error('Node %s (%s) is unreachable: %s', db.host, role, exc)
            raise ConnectivityError(str(exc), report=report) from exc
        return report

    def _probe_slot(self, db, report):
        slot = db.get_slot(self._slot)
        if slot is None:
            logging.warning('Replication slot %s not found on %s.', self._slot, db.host)
            report.replication_slot_active = False
            return
        report.replication_slot_active = bool(slot['active'])
        report.lag_bytes = slot['lag_bytes']
        if not report.replication_slot_active:
            logging.warning('Replication slot %s on %s is not active.', self._slot, db.host)

    def _probe_subscription(self, db, report):
        sub = db.get_subscription(self._subscription)
        report.subscription_exists = sub is not None
        if sub is None:
            logging.warning('Subscription %s not found on %s.', self._subscription, db.host)
            return
        report.subscription_enabled = bool(sub['enabled'])
        report.last_message_age = sub['last_message_age']
        tables = db.get_subscription_tables(self._subscription)
        report.tables_total = len(tables)
        report.tables_ready = len([t for t in tables if t['state'] == 'r'])
        if report.last_message_age is None:
            logging.warning('Subscription %s on %s never received messages.', self._subscription, db.host)
        elif report.last_message_age > self._stale_message_age:
            logging.warning(
                'Subscription %s on %s got no message for %.0f seconds.',
                self._subscription,
                db.host,
                report.last_message_age,
            )

    def is_stale(self, report: HealthReport):
        return report.last_message_age is None or report.last_message_age > self._stale_message_age

    def probe_proxy(self, proxy_ctl) -> ProxyState:
        """
        proxy_ctl is a ProxyController; its status is the pooler probe
        """
        try:
            return proxy_ctl.state()
        except ConnectivityError:
            logging.error('Pooler is unreachable.')
            raise


def summarize(report: HealthReport):
    """
    One line description of report for logs
    """
    if not report.reachable:
        return f'{report.host} ({report.role}): unreachable'
    parts = [f'{report.host} ({report.role}): reachable', 'read-only' if report.read_only else 'read-write']
    if report.role == ROLE_PRIMARY:
        parts.append(f'slot active={report.replication_slot_active}, lag={report.lag_bytes}')
    else:
        parts.append(
            f'subscription exists={report.subscription_exists}, enabled={report.subscription_enabled}, '
            f'tables {report.tables_ready}/{report.tables_total} ready'
        )
    return ', '.join(parts)


def problems(reports, lag_threshold):
    """
    Reasons the pair is not fit for failover, empty if it is
    """
    found = []
    for report in reports:
        if not report.reachable:
            found.append(f'{report.host} ({report.role}) is unreachable')
        elif report.role == ROLE_STANDBY and not report.subscription_exists:
            found.append(f'subscription is absent on {report.host}')
        elif report.role == ROLE_PRIMARY and report.lag_bytes is not None and report.lag_bytes > lag_threshold:
            found.append(
                f'replication lag {helpers.format_bytes(report.lag_bytes)} on {report.host} '
                f'exceeds threshold {helpers.format_bytes(lag_threshold)}'
            )
    return found
