"""
Sequence value propagation from primary to standby.
"""
# encoding: utf-8

import logging
from concurrent.futures import ThreadPoolExecutor

from . import helpers
from .admin import DatabaseAdmin
from .exceptions import ConnectivityError
from .types import SEQ_ERROR, SEQ_SKIPPED, SEQ_UPDATED, SequenceState


def _exclude_list(value):
    return [s.strip() for s in value.split(',') if s.strip()]


class SequenceSynchronizer(object):
    """
    Logical replication does not carry sequence values, so before
    promotion every standby sequence is advanced past its primary
    counterpart. Values are never decreased.
    """

    def __init__(self, config, primary: DatabaseAdmin, standby: DatabaseAdmin):
        self._primary = primary
        self._standby = standby
        self._workers = max(config.getint('sequences', 'workers'), 1)
        self._exclude = _exclude_list(config.get('sequences', 'exclude_schemas'))
        self._config = config
        self._log = logging.getLogger('sequences')

    def list_sequences(self):
        return self._primary.list_sequences(self._exclude)

    def sync(self, buffer) -> list[SequenceState]:
        """
        Return ledger with one entry per primary sequence in listing order.
        Failure of one sequence does not stop the others. Lost connections
        are retried per sequence and raised once retries are exhausted:
        a sequence left behind must not go unnoticed.
        """
        if buffer < 0:
            raise ValueError('sequence buffer must not be negative')
        names = self.list_sequences()
        self._log.info('Synchronizing %d sequence(s) with buffer %d.', len(names), buffer)
        with ThreadPoolExecutor(max_workers=self._workers) as executor:
            ledger = list(executor.map(lambda name: self._sync_one(name, buffer), names))
        updated = len([s for s in ledger if s.status == SEQ_UPDATED])
        skipped = len([s for s in ledger if s.status == SEQ_SKIPPED])
        failed = len([s for s in ledger if s.status == SEQ_ERROR])
        self._log.info('Sequences: %d updated, %d already ahead, %d failed.', updated, skipped, failed)
        return ledger

    def _sync_one(self, name, buffer):
        state = SequenceState(name=name, buffer=buffer)
        advance = helpers.retry_from_config(self._config, f'sequence {name}', self._advance)
        try:
            advance(state)
        except ConnectivityError:
            raise
        except Exception as exc:
            state.status = SEQ_ERROR
            state.error = str(exc).strip()
            self._log.error('Could not synchronize sequence %s: %s', name, state.error)
        return state

    def _advance(self, state):
        name = state.name
        state.primary_value = self._primary.get_sequence_value(name)
        state.standby_value = self._standby.get_sequence_value(name)
        target = state.primary_value + state.buffer
        if target > state.standby_value:
            state.resulting_value = self._standby.set_sequence_value(name, target)
            state.status = SEQ_UPDATED
            self._log.debug('%s: %d -> %d', name, state.standby_value, state.resulting_value)
        else:
            state.resulting_value = state.standby_value
            state.status = SEQ_SKIPPED
            self._log.debug('%s: standby value %d is already ahead of %d', name, state.standby_value, target)
