"""
Logical replication channel lifecycle: pause, resume, promote, verify.
"""
# encoding: utf-8

import logging

from . import helpers
from .admin import DatabaseAdmin
from .exceptions import ConnectivityError, IrreversibleStepError, PreconditionError, StateConflictError
from .health import HealthProber
from .types import (
    CHANNEL_ACTIVE,
    CHANNEL_DROPPED,
    CHANNEL_PAUSED,
    ROLE_PRIMARY,
    TABLE_STATES,
    ReplicationChannel,
)


class ReplicationController(object):
    """
    Owns every state transition of the replication channel.
    The subscription lives on the standby, the slot on the primary.
    """

    def __init__(self, config, primary: DatabaseAdmin, standby: DatabaseAdmin, prober: HealthProber):
        self._primary = primary
        self._standby = standby
        self._prober = prober
        self._publication = config.get('replication', 'publication')
        self._subscription = config.get('replication', 'subscription')
        self._slot = config.get('replication', 'slot')
        self._drop_remote_slot = config.getboolean('replication', 'drop_remote_slot')
        self._verify_retries = config.getint('replication', 'verify_retries')
        self._retry_delay = config.getfloat('global', 'retry_delay')
        self._log = logging.getLogger('replication')

    def channel(self) -> ReplicationChannel:
        """
        Describe channel with its live state
        """
        channel = ReplicationChannel(
            publication=self._publication,
            subscription=self._subscription,
            slot_name=self._slot,
        )
        channel.state = self.get_state(channel)
        return channel

    def get_state(self, channel: ReplicationChannel):
        sub = self._standby.get_subscription(channel.subscription)
        if sub is None:
            return CHANNEL_DROPPED
        return CHANNEL_ACTIVE if sub['enabled'] else CHANNEL_PAUSED

    def measure_lag(self, channel: ReplicationChannel):
        """
        Bytes of WAL not yet confirmed by the subscriber. None if slot is absent.
        """
        report = self._prober.probe(self._primary, ROLE_PRIMARY)
        channel.lag_bytes = report.lag_bytes
        return report.lag_bytes

    def _lag_snapshot(self, channel):
        try:
            return self.measure_lag(channel)
        except ConnectivityError:
            self._log.warning('Could not measure lag: primary %s is unreachable.', self._primary.host)
            channel.lag_bytes = None
            return None

    def _require_subscription(self, channel, action):
        sub = self._standby.get_subscription(channel.subscription)
        if sub is None:
            channel.state = CHANNEL_DROPPED
            raise PreconditionError(
                f'cannot {action}: subscription {channel.subscription} is absent on {self._standby.host}',
                remediation='check whether the standby was already promoted',
            )
        return sub

    def pause(self, channel: ReplicationChannel):
        """
        Disable the subscription. Already disabled channel is a success.
        """
        sub = self._require_subscription(channel, 'pause replication')
        if not sub['enabled']:
            self._log.info('Subscription %s is already disabled.', channel.subscription)
            channel.state = CHANNEL_PAUSED
            return channel
        self._standby.disable_subscription(channel.subscription)
        if self.get_state(channel) != CHANNEL_PAUSED:
            raise StateConflictError(f'subscription {channel.subscription} is not disabled after DISABLE')
        channel.state = CHANNEL_PAUSED
        self._log.info('Replication paused. Slot %s keeps accumulating WAL on primary.', channel.slot_name)
        return channel

    def resume(self, channel: ReplicationChannel):
        """
        Enable the subscription and return lag observed right now.
        Does not wait for the standby to catch up.
        """
        sub = self._require_subscription(channel, 'resume replication')
        if sub['enabled']:
            self._log.info('Subscription %s is already enabled.', channel.subscription)
        else:
            self._standby.enable_subscription(channel.subscription)
            if self.get_state(channel) != CHANNEL_ACTIVE:
                raise StateConflictError(f'subscription {channel.subscription} is not enabled after ENABLE')
        channel.state = CHANNEL_ACTIVE
        lag = self._lag_snapshot(channel)
        self._log.info('Replication resumed, lag is %s.', helpers.format_bytes(lag))
        return lag

    def freeze_source(self, channel: ReplicationChannel):
        """
        Make primary read only. Return lag observed at the freeze point.
        """
        self._primary.set_read_only(True)
        if not self._primary.is_read_only():
            raise StateConflictError(f'primary {self._primary.host} is still writable after freeze')
        lag = self._lag_snapshot(channel)
        self._log.info('Primary %s frozen, lag at freeze point is %s.', self._primary.host, helpers.format_bytes(lag))
        return lag

    def thaw_source(self, channel: ReplicationChannel):
        self._primary.set_read_only(False)
        if self._primary.is_read_only():
            raise StateConflictError(f'primary {self._primary.host} is still read only after thaw')
        self._log.info('Primary %s is writable again.', self._primary.host)

    def _subscription_present(self, channel):
        check = helpers.get_retrying(
            self._verify_retries,
            self._retry_delay,
            f'verifying subscription {channel.subscription}',
            lambda: self._standby.get_subscription(channel.subscription) is not None,
        )
        return check()

    def promote(self, channel: ReplicationChannel, lag_threshold, force=False):
        """
        Irreversibly drop the subscription on the standby.

        Lag must not exceed lag_threshold unless force is set. Nothing is
        changed when this precondition fails. DROP is never reissued: if its
        result is ambiguous the channel state is queried again instead.
        """
        sub = self._standby.get_subscription(channel.subscription)
        if sub is None:
            self._log.warning(
                'Subscription %s is already absent on %s, treating standby as promoted.',
                channel.subscription,
                self._standby.host,
            )
            channel.state = CHANNEL_DROPPED
            return channel

        lag = self._lag_snapshot(channel)
        if lag is None and not force:
            raise PreconditionError(
                'replication lag cannot be measured',
                remediation='restore access to the primary, or re-run with force to promote without lag check',
            )
        if lag is not None and lag > lag_threshold:
            if not force:
                raise PreconditionError(
                    f'replication lag {lag} bytes exceeds threshold {lag_threshold} bytes',
                    remediation='wait for the standby to catch up, or re-run with force to proceed despite lag',
                )
            self._log.warning('Lag %d exceeds threshold %d, forced promotion.', lag, lag_threshold)
        elif lag is None:
            self._log.warning('Lag is unknown, forced promotion.')

        try:
            self._standby.drop_subscription(channel.subscription)
        except ConnectivityError as exc:
            self._log.error('DROP SUBSCRIPTION result is ambiguous (%s), querying channel state.', exc)

        try:
            present = self._subscription_present(channel)
        except ConnectivityError as exc:
            raise IrreversibleStepError(
                f'cannot verify subscription {channel.subscription} after drop: {exc}',
                remediation=(
                    f'connect to {self._standby.host} and check pg_subscription for {channel.subscription}; '
                    f'if it is still present run DROP SUBSCRIPTION {channel.subscription}'
                ),
            ) from exc
        if present:
            channel.state = self.get_state(channel)
            raise StateConflictError(f'subscription {channel.subscription} is still present after drop')

        channel.state = CHANNEL_DROPPED
        self._log.info('Subscription %s dropped, %s is writable.', channel.subscription, self._standby.host)
        if self._drop_remote_slot:
            self._drop_old_slot(channel)
        return channel

    def _drop_old_slot(self, channel):
        try:
            if self._primary.get_slot(channel.slot_name) is not None:
                self._primary.drop_slot(channel.slot_name)
        except Exception as exc:
            self._log.warning(
                'Could not drop slot %s on old primary %s (%s), drop it before rebuilding.',
                channel.slot_name,
                self._primary.host,
                exc,
            )

    def verify(self, channel: ReplicationChannel):
        """
        Return per-table synchronization state of the subscription
        """
        self._require_subscription(channel, 'verify replication')
        tables = self._standby.get_subscription_tables(channel.subscription)
        return {t['table']: TABLE_STATES.get(t['state'], 'unknown') for t in tables}
