"""
Durable JSON lines journal of failover runs.
"""
# encoding: utf-8

import dataclasses
import logging
import os

from . import helpers
from .exceptions import RunRecordError
from .types import FailoverRun, SequenceState, StepResult


class RunLog(object):
    """
    Appends every state change of a FailoverRun to
    <run_log_dir>/failover_<id>.jsonl as soon as it happens.
    """

    def __init__(self, config, run: FailoverRun):
        self.run = run
        self.path = os.path.join(config.get('global', 'run_log_dir'), f'failover_{run.id}.jsonl')
        self._broken = False

    def open(self):
        """
        Create journal and write run header. Errors here are fatal:
        nothing has been changed yet.
        """
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            helpers.append_json_line(
                self.path,
                {
                    'type': 'run',
                    'id': self.run.id,
                    'primary': self.run.primary,
                    'standby': self.run.standby,
                    'skip_freeze': self.run.skip_freeze,
                    'dry_run': self.run.dry_run,
                    'started_at': self.run.started_at,
                },
            )
        except OSError as exc:
            raise RunRecordError(f'could not create run log {self.path}: {exc}') from exc
        logging.info('Run %s is journaled to %s', self.run.id, self.path)

    def _append(self, data):
        if self._broken:
            return
        try:
            helpers.append_json_line(self.path, data)
        except OSError as exc:
            # Failover must go on, in-memory record is still complete
            self._broken = True
            logging.error('Could not write run log %s: %s', self.path, exc)

    def state(self, state, ts):
        self._append({'type': 'state', 'state': state, 'timestamp': ts})

    def step(self, step: StepResult):
        data = dataclasses.asdict(step)
        data['type'] = 'step'
        self._append(data)

    def sequences(self, ledger: list[SequenceState]):
        self._append({'type': 'sequences', 'ledger': [dataclasses.asdict(s) for s in ledger]})

    def finish(self):
        run = self.run
        self._append(
            {
                'type': 'outcome',
                'outcome': run.outcome,
                'finished_at': run.finished_at,
                'rto_seconds': run.rto_seconds,
                'rpo_bytes': run.rpo_bytes,
                'remediation': run.remediation,
            }
        )


def load_run(path):
    """
    Rebuild FailoverRun from journal. Returns (run, sequence ledger).
    Outcome is None for a run that was interrupted.
    """
    try:
        records = helpers.read_json_lines(path)
    except (OSError, ValueError) as exc:
        raise RunRecordError(f'could not read run log {path}: {exc}') from exc
    if not records or records[0].get('type') != 'run':
        raise RunRecordError(f'{path} is not a failover run log')
    header = records[0]
    run = FailoverRun(
        primary=header['primary'],
        standby=header['standby'],
        skip_freeze=header.get('skip_freeze', False),
        dry_run=header.get('dry_run', False),
        id=header['id'],
        started_at=header['started_at'],
    )
    ledger = []
    for rec in records[1:]:
        kind = rec.pop('type', None)
        if kind == 'state':
            run.states.append((rec['state'], rec['timestamp']))
        elif kind == 'step':
            run.steps.append(StepResult(**rec))
        elif kind == 'sequences':
            ledger = [SequenceState(**s) for s in rec['ledger']]
        elif kind == 'outcome':
            run.finished_at = rec['finished_at']
            run.rto_seconds = rec['rto_seconds']
            run.rpo_bytes = rec['rpo_bytes']
            run.remediation = rec['remediation']
            run.outcome = rec['outcome']
        else:
            logging.warning('Unknown record type %s in %s', kind, path)
    return run, ledger
