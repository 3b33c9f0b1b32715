"""
Failover orchestrator: the state machine sequencing proxy, replication
and sequence operations into one auditable run.
"""
# encoding: utf-8

import logging
import time

from . import helpers
from .admin import DatabaseAdmin, ProxyAdmin
from .exceptions import (
    ConnectivityError,
    IrreversibleStepError,
    PgFailoverException,
    PreconditionError,
    RunLockError,
    StateConflictError,
)
from .health import HealthProber, summarize
from .proxy import ProxyController
from .replication import ReplicationController
from .runlock import make_run_lock
from .runlog import RunLog
from .sequences import SequenceSynchronizer
from .types import (
    OUTCOME_ABORTED,
    OUTCOME_DEGRADED,
    OUTCOME_ROLLED_BACK,
    OUTCOME_SUCCESS,
    ROLE_PRIMARY,
    ROLE_STANDBY,
    SEQ_ERROR,
    SEQ_SKIPPED,
    SEQ_UPDATED,
    STEP_FAILED,
    STEP_SKIPPED,
    STEP_SUCCESS,
    FailoverRun,
    Node,
    StepResult,
)

STATE_IDLE = 'idle'
STATE_PROXY_PAUSED = 'proxy_paused'
STATE_PRIMARY_FROZEN = 'primary_frozen'
STATE_SEQUENCES_SYNCED = 'sequences_synced'
STATE_STANDBY_PROMOTED = 'standby_promoted'
STATE_UPSTREAM_SWAPPED = 'upstream_swapped'
STATE_PROXY_RESUMED = 'proxy_resumed'
STATE_COMPLETE = 'complete'

STATES = (
    STATE_IDLE,
    STATE_PROXY_PAUSED,
    STATE_PRIMARY_FROZEN,
    STATE_SEQUENCES_SYNCED,
    STATE_STANDBY_PROMOTED,
    STATE_UPSTREAM_SWAPPED,
    STATE_PROXY_RESUMED,
    STATE_COMPLETE,
)

# Channel drop can not be undone
POINT_OF_NO_RETURN = STATE_STANDBY_PROMOTED

TRANSITIONS = {
    STATE_IDLE: {STATE_PROXY_PAUSED},
    STATE_PROXY_PAUSED: {STATE_PRIMARY_FROZEN, STATE_SEQUENCES_SYNCED},
    STATE_PRIMARY_FROZEN: {STATE_SEQUENCES_SYNCED},
    STATE_SEQUENCES_SYNCED: {STATE_STANDBY_PROMOTED},
    STATE_STANDBY_PROMOTED: {STATE_UPSTREAM_SWAPPED},
    STATE_UPSTREAM_SWAPPED: {STATE_PROXY_RESUMED},
    STATE_PROXY_RESUMED: {STATE_COMPLETE},
    STATE_COMPLETE: set(),
}

# Edges walked by rollback. Only states before the point of no return appear here.
ROLLBACK_TRANSITIONS = {
    STATE_SEQUENCES_SYNCED: {STATE_PRIMARY_FROZEN, STATE_PROXY_PAUSED},
    STATE_PRIMARY_FROZEN: {STATE_PROXY_PAUSED},
    STATE_PROXY_PAUSED: {STATE_IDLE},
}

# (step, state entered on success, retried on connectivity errors)
STEPS = (
    ('pause_proxy', STATE_PROXY_PAUSED, True),
    ('freeze_primary', STATE_PRIMARY_FROZEN, True),
    # retried per sequence
    ('sync_sequences', STATE_SEQUENCES_SYNCED, False),
    ('promote_standby', STATE_STANDBY_PROMOTED, False),
    ('swap_upstream', STATE_UPSTREAM_SWAPPED, True),
    ('resume_proxy', STATE_PROXY_RESUMED, True),
)

UNDOABLE_STEPS = ('pause_proxy', 'freeze_primary', 'promote_standby')

NEXT_ACTIONS = {
    'acquire_lock': 'another failover of this pair is in progress, wait for it to finish or remove its stale lock',
    'preflight': 'nothing was changed, fix the reported problem and re-run',
    'pause_proxy': 'check pgbouncer with "pgfailover proxy status" and re-run',
    'freeze_primary': 'check primary {primary} and re-run, or re-run with --skip-freeze if it is lost',
    'sync_sequences': 'inspect failed sequences with "pgfailover sync-sequences" and re-run',
    'promote_standby': 'inspect channel with "pgfailover replication verify" and re-run',
}

DRY_RUN_ACTIONS = {
    'pause_proxy': 'pause pooler pointing to {upstream}',
    'freeze_primary': 'set default_transaction_read_only on primary {primary}',
    'sync_sequences': 'advance standby sequences by primary value + {buffer}',
    'promote_standby': 'drop subscription {subscription} on {standby}',
    'swap_upstream': 'point pooler to {standby} and reload',
    'resume_proxy': 'resume pooler',
}

MANUAL_COMPLETION = {
    'swap_upstream': 'pgfailover proxy swap-upstream {standby}',
    'resume_proxy': 'pgfailover proxy resume',
}


def transition_allowed(source, target):
    return target in TRANSITIONS.get(source, ()) or target in ROLLBACK_TRANSITIONS.get(source, ())


def past_point_of_no_return(state):
    return STATES.index(state) >= STATES.index(POINT_OF_NO_RETURN)


class FailoverOrchestrator(object):
    """
    Runs failover of primary to standby once. Owns the FailoverRun record,
    the components below are stateless.
    """

    def __init__(
        self,
        config,
        primary: DatabaseAdmin,
        standby: DatabaseAdmin,
        proxy_admin: ProxyAdmin,
        skip_freeze=False,
        dry_run=False,
        force=False,
        sequence_buffer=None,
        lag_threshold=None,
        run_lock=None,
    ):
        self.config = config
        self._primary = primary
        self._standby = standby
        self.skip_freeze = skip_freeze
        self.dry_run = dry_run
        self.force = force
        self._buffer = sequence_buffer if sequence_buffer is not None else config.getint('sequences', 'buffer')
        if lag_threshold is None:
            lag_threshold = config.getint('replication', 'lag_threshold')
        self._lag_threshold = lag_threshold
        self._fail_on_sequence_errors = config.getboolean('sequences', 'fail_on_errors')

        self._prober = HealthProber(config)
        self._replication = ReplicationController(config, primary, standby, self._prober)
        self._sequences = SequenceSynchronizer(config, primary, standby)
        self._proxy = ProxyController(config, proxy_admin)
        self._lock = run_lock or make_run_lock(config, primary.host, standby.host)

        self.run = FailoverRun(primary=primary.host, standby=standby.host, skip_freeze=skip_freeze, dry_run=dry_run)
        self._runlog = RunLog(config, self.run)
        self.nodes = {
            ROLE_PRIMARY: Node(role=ROLE_PRIMARY, host=primary.host),
            ROLE_STANDBY: Node(role=ROLE_STANDBY, host=standby.host),
        }
        self.ledger = []
        self._state = None
        self._completed = []
        self._channel = None
        self._original_upstream = None
        self._primary_reachable = True
        self._preflight_lag = None
        self._freeze_lag = None
        self._cancel_warned = False
        self._failed_undos = set()
        self._log = logging.getLogger('failover')

    @property
    def state(self):
        return self._state

    def _format(self, template):
        return template.format(
            primary=self._primary.host,
            standby=self._standby.host,
            upstream=self._original_upstream,
            buffer=self._buffer,
            subscription=self.config.get('replication', 'subscription'),
        )

    def _move(self, target):
        if self._state is not None and not transition_allowed(self._state, target):
            raise StateConflictError(f'transition {self._state} -> {target} is not allowed')
        ts = time.time()
        self.run.enter_state(target, ts)
        self._runlog.state(target, ts)
        self._lock.publish(target, self.run.id)
        self._log.info('State: %s', target)
        self._state = target

    def _record(self, step: StepResult):
        self.run.record_step(step)
        self._runlog.step(step)
        if step.status == STEP_FAILED:
            self._log.error('Step %s failed: %s', step.name, step.error)
        else:
            self._log.info('Step %s: %s%s', step.name, step.status, f' ({step.detail})' if step.detail else '')

    def _skip(self, name, detail):
        self._record(StepResult(name=name, status=STEP_SKIPPED, detail=detail))

    def _run_step(self, name, func, retry=True):
        if retry:
            func = helpers.retry_from_config(self.config, name, func)
        step = StepResult(name=name)
        try:
            step.detail = func()
        except Exception as exc:
            step.status = STEP_FAILED
            step.error = f'{type(exc).__name__}: {exc}'
            step.timestamp = time.time()
            if not isinstance(exc, PgFailoverException):
                helpers.log_traceback()
            self._record(step)
            raise
        step.status = STEP_SUCCESS
        step.timestamp = time.time()
        self._record(step)
        return step

    def execute(self) -> FailoverRun:
        """
        Run failover to the end. Always returns the finished run record.
        """
        self._runlog.open()
        self._move(STATE_IDLE)
        try:
            self._lock.acquire()
        except RunLockError as exc:
            self._record(StepResult(name='acquire_lock', status=STEP_FAILED, error=str(exc)))
            return self._abort('acquire_lock', exc)
        try:
            return self._execute()
        finally:
            self._lock.release()

    def _execute(self):
        if not helpers.should_run():
            return self._abort('preflight', PreconditionError('cancelled before start'))
        try:
            self._run_step('preflight', self._preflight, retry=False)
        except Exception as exc:
            return self._abort('preflight', exc)
        if self.dry_run:
            return self._execute_dry_run()

        for name, target, retry in STEPS:
            if not helpers.should_run():
                if not past_point_of_no_return(self._state):
                    if self._state == STATE_IDLE:
                        return self._abort(name, PreconditionError('cancelled before proxy pause'))
                    return self._rollback(name, PreconditionError('cancelled by operator'))
                if not self._cancel_warned:
                    self._log.warning('Cancellation ignored: standby is already promoted, finishing failover.')
                    self._cancel_warned = True
            if name == 'freeze_primary' and self.skip_freeze:
                self._log.warning('Skipping primary freeze: potential data loss acknowledged.')
                self._skip(name, 'potential data loss acknowledged')
                continue
            state_before = self._state
            try:
                self._run_step(name, getattr(self, '_' + name), retry=retry)
            except Exception as exc:
                if past_point_of_no_return(self._state) or isinstance(exc, IrreversibleStepError):
                    return self._degrade(name, exc)
                return self._rollback(name, exc)
            self._move(target)
            self._completed.append((name, state_before))

        self._move(STATE_COMPLETE)
        if self.skip_freeze:
            self._log.warning('Failover finished without freeze: potential data loss acknowledged.')
        return self._finish(OUTCOME_SUCCESS)

    def _execute_dry_run(self):
        for name, _, _ in STEPS:
            if name == 'freeze_primary' and self.skip_freeze:
                self._skip(name, 'dry run: potential data loss acknowledged, primary would not be frozen')
                continue
            detail = 'dry run: would ' + self._format(DRY_RUN_ACTIONS[name])
            if name == 'promote_standby' and not self.force:
                if self._preflight_lag is None or self._preflight_lag > self._lag_threshold:
                    detail += f' (lag {helpers.format_bytes(self._preflight_lag)} needs --force)'
            self._skip(name, detail)
        return self._finish(OUTCOME_SUCCESS)

    def _probe(self, db, role):
        probe = helpers.retry_from_config(self.config, f'probe of {db.host}', self._prober.probe)
        report = probe(db, role)
        self.nodes[role].health = report
        return report

    def _preflight(self):
        try:
            standby = self._probe(self._standby, ROLE_STANDBY)
        except ConnectivityError as exc:
            self.nodes[ROLE_STANDBY].health = exc.report
            raise PreconditionError(f'standby is unreachable: {exc}', remediation='restore access to the standby')
        if not standby.subscription_exists:
            raise PreconditionError(
                'subscription is absent on standby',
                remediation='standby may be promoted already, check it with "pgfailover replication verify"',
            )
        if self._prober.is_stale(standby):
            self._log.warning('Standby did not receive replication messages recently.')
        self._channel = self._replication.channel()

        try:
            proxy = helpers.retry_from_config(self.config, 'pooler probe', self._prober.probe_proxy)(self._proxy)
        except ConnectivityError as exc:
            raise PreconditionError(f'pooler is unreachable: {exc}', remediation='restore access to pgbouncer')
        if proxy.upstream is None:
            raise PreconditionError('pooler reports no upstream', remediation='check [proxy] database setting')
        if self._standby.host in self._proxy.upstream_hosts():
            raise PreconditionError(
                f'pooler already points to {self._standby.host}',
                remediation='failover looks finished already, check "pgfailover health"',
            )
        self._original_upstream = proxy.upstream
        if proxy.upstream != self._primary.host:
            self._log.warning('Pooler upstream %s is not the primary %s.', proxy.upstream, self._primary.host)

        reports = [standby]
        try:
            primary = self._probe(self._primary, ROLE_PRIMARY)
            reports.append(primary)
            self._preflight_lag = primary.lag_bytes
        except ConnectivityError as exc:
            self.nodes[ROLE_PRIMARY].health = exc.report
            if not self.skip_freeze:
                raise PreconditionError(
                    f'primary is unreachable: {exc}',
                    remediation='re-run with --skip-freeze to fail over accepting potential data loss',
                )
            self._primary_reachable = False
            self._log.warning('Primary %s is unreachable, continuing in skip-freeze mode.', self._primary.host)
            reports.append(exc.report)
        return '; '.join(summarize(r) for r in reports if r is not None)

    def _pause_proxy(self):
        self._proxy.pause()
        queued = sum(p['queued'] for p in self._proxy.status().values())
        return f'{queued} client(s) queued'

    def _freeze_primary(self):
        self._freeze_lag = self._replication.freeze_source(self._channel)
        return f'lag at freeze point {helpers.format_bytes(self._freeze_lag)}'

    def _sync_sequences(self):
        if not self._primary_reachable:
            self._log.warning('Primary is unreachable, sequences need manual reconciliation.')
            return 'primary unreachable, sequences were not synchronized'
        try:
            self.ledger = self._sequences.sync(self._buffer)
        except ConnectivityError as exc:
            if not self.skip_freeze or self._primary_answers():
                raise
            self._primary_reachable = False
            self._log.warning('Primary became unreachable (%s), sequences need manual reconciliation.', exc)
            return 'primary unreachable, sequences were not synchronized'
        self._runlog.sequences(self.ledger)
        failed = [s.name for s in self.ledger if s.status == SEQ_ERROR]
        if failed and self._fail_on_sequence_errors:
            raise PgFailoverException(f'{len(failed)} sequence(s) failed: {", ".join(failed)}')
        counts = [len([s for s in self.ledger if s.status == status]) for status in (SEQ_UPDATED, SEQ_SKIPPED)]
        return f'{counts[0]} updated, {counts[1]} already ahead, {len(failed)} failed'

    def _primary_answers(self):
        try:
            return self._primary.ping()
        except ConnectivityError:
            return False

    def _promote_standby(self):
        force = self.force or (self.skip_freeze and not self._primary_reachable)
        self._replication.promote(self._channel, self._lag_threshold, force=force)
        return f'subscription dropped at lag {helpers.format_bytes(self._channel.lag_bytes)}'

    def _swap_upstream(self):
        self._proxy.swap_upstream(self._standby.host)
        return f'upstream {self._original_upstream} -> {self._standby.host}'

    def _resume_proxy(self):
        upstream = self._proxy.upstream()
        if upstream == self._original_upstream or self._standby.host not in self._proxy.upstream_hosts():
            raise StateConflictError(f'pooler upstream is {upstream}, refusing to resume')
        if self._standby.is_read_only():
            raise StateConflictError(f'new primary {self._standby.host} is read only, refusing to resume')
        self._proxy.resume()
        return f'pooler resumed on {upstream}'

    def _undo_pause_proxy(self):
        if self._original_upstream and self._proxy.upstream() != self._original_upstream:
            self._proxy.swap_upstream(self._original_upstream)
        self._proxy.resume()
        return f'pooler resumed on {self._original_upstream}'

    def _undo_freeze_primary(self):
        self._replication.thaw_source(self._channel)
        return f'primary {self._primary.host} is writable'

    def _undo_promote_standby(self):
        lag = self._replication.resume(self._channel)
        return f'subscription enabled, lag {helpers.format_bytes(lag)}'

    def _rollback(self, failed_step, exc):
        self._log.error('Step %s failed in state %s, rolling back.', failed_step, self._state)
        last_completed = self._state
        manual = []
        # States are not walked back past a failed undo
        stuck = False
        # Undo of a failed step too: it may have been applied partially.
        # A refused precondition changed nothing.
        if failed_step in UNDOABLE_STEPS and not isinstance(exc, PreconditionError):
            stuck = not self._undo(failed_step, manual)
        for name, state_before in reversed(self._completed):
            if name == 'pause_proxy' and self._primary_left_frozen():
                self._skip(f'rollback_{name}', f'primary {self._primary.host} is still read only, pooler left paused')
                manual.append(f'thaw primary {self._primary.host}, then pgfailover proxy resume')
                stuck = True
            elif name in UNDOABLE_STEPS:
                stuck = not self._undo(name, manual) or stuck
            else:
                self._skip(f'rollback_{name}', 'nothing to undo')
            if not stuck:
                self._move(state_before)
        self._completed = []
        remediation = self._abort_report(last_completed, failed_step, exc)
        if manual:
            remediation += '; undo manually: ' + '; '.join(manual)
        return self._finish(OUTCOME_ROLLED_BACK, remediation)

    def _undo(self, name, manual):
        try:
            self._run_step(f'rollback_{name}', getattr(self, f'_undo_{name}'))
        except Exception as exc:
            manual.append(f'{name} ({exc})')
            self._failed_undos.add(name)
            return False
        return True

    def _primary_left_frozen(self):
        """
        Pooler must not be resumed onto a read only primary. Only checked
        when thawing it failed.
        """
        if 'freeze_primary' not in self._failed_undos:
            return False
        try:
            return self._primary.is_read_only()
        except PgFailoverException as exc:
            self._log.error('Could not check whether primary %s is read only: %s', self._primary.host, exc)
            return True

    def _degrade(self, failed_step, exc):
        self._log.error('Step %s failed after standby promotion, no rollback is possible.', failed_step)
        commands = []
        if isinstance(exc, IrreversibleStepError) and exc.remediation:
            commands.append(exc.remediation)
        names = [name for name, _, _ in STEPS]
        for name in names[names.index(failed_step) :]:
            if name in MANUAL_COMPLETION:
                commands.append(self._format(MANUAL_COMPLETION[name]))
        if any(name == 'freeze_primary' for name, _ in self._completed):
            commands.append(f'keep old primary {self._primary.host} read only until it is rebuilt')
        remediation = (
            f'last completed state: {self._state}; failed step: {failed_step} ({exc}); '
            f'standby {self._standby.host} is promoted, finish manually: ' + '; '.join(commands)
        )
        return self._finish(OUTCOME_DEGRADED, remediation)

    def _abort_report(self, last_completed, failed_step, exc):
        action = getattr(exc, 'remediation', None) or self._format(NEXT_ACTIONS.get(failed_step, 're-run failover'))
        return f'last completed state: {last_completed}; failed step: {failed_step} ({exc}); next action: {action}'

    def _abort(self, failed_step, exc):
        self._log.error('Failover aborted at %s: %s', failed_step, exc)
        return self._finish(OUTCOME_ABORTED, self._abort_report(self._state, failed_step, exc))

    def _finish(self, outcome, remediation=None):
        run = self.run
        paused = run.state_timestamp(STATE_PROXY_PAUSED)
        resumed = run.state_timestamp(STATE_PROXY_RESUMED)
        if paused is not None and resumed is not None:
            run.rto_seconds = resumed - paused
        run.rpo_bytes = self._freeze_lag if self._freeze_lag is not None else self._preflight_lag
        run.finish(outcome, remediation)
        self._runlog.finish()
        self._lock.publish(outcome, run.id)
        if remediation:
            self._log.error(remediation)
        self._log.info(
            'Run %s finished: %s, RTO %s s, RPO %s.',
            run.id,
            outcome,
            'unknown' if run.rto_seconds is None else f'{run.rto_seconds:.3f}',
            helpers.format_bytes(run.rpo_bytes),
        )
        return run
