# coding: utf-8
"""
Command line interface:
    - failover of primary to standby
    - health probes
    - direct operations on replication, sequences and pooler
    - rendering of run logs
"""
import argparse
import dataclasses
import json
import logging
import sys

import yaml

from . import helpers, read_config, init_logging
from .command_manager import CommandManager
from .exceptions import ConnectivityError, PgFailoverException
from .failover import FailoverOrchestrator
from .health import HealthProber, problems
from .pg import node_admins
from .pgbouncer import PgbouncerAdmin
from .proxy import ProxyController
from .replication import ReplicationController
from .runlog import load_run
from .sequences import SequenceSynchronizer
from .types import (
    OUTCOME_ABORTED,
    OUTCOME_DEGRADED,
    OUTCOME_ROLLED_BACK,
    OUTCOME_SUCCESS,
    ROLE_PRIMARY,
    ROLE_STANDBY,
    SEQ_ERROR,
)

EXIT_CODES = {
    OUTCOME_SUCCESS: 0,
    OUTCOME_ABORTED: 1,
    OUTCOME_ROLLED_BACK: 1,
    OUTCOME_DEGRADED: 2,
}


def entry():
    """
    Entry point.
    """
    opts = parse_args()
    conf = read_config(
        filename=opts.config_file,
        options=opts,
    )
    init_logging(conf)
    run_action(opts, conf)


def run_action(opts, conf):
    """
    Run subcommand. Any error ends the process with non-zero code.
    """
    try:
        opts.action(opts, conf)
    except (KeyboardInterrupt, EOFError):
        logging.error('abort')
        sys.exit(1)
    except RuntimeError as err:
        logging.error(err)
        sys.exit(1)
    except PgFailoverException as exc:
        logging.error('%s: %s', type(exc).__name__, exc)
        remediation = getattr(exc, 'remediation', None)
        if remediation:
            logging.error('next action: %s', remediation)
        sys.exit(1)
    except Exception as exc:
        logging.exception(exc)
        sys.exit(1)


def _print(data, as_json=False):
    style = {'sort_keys': True, 'indent': 4}
    if as_json:
        print(json.dumps(data, **style))
    else:
        print(yaml.dump(data, default_flow_style=False, **style))


def _proxy_admin(conf):
    return PgbouncerAdmin(conf, CommandManager(dict(conf.items('commands'))))


def failover(opts, conf):
    """
    Fail over from primary to standby.
    """
    primary, standby = node_admins(conf)
    orchestrator = FailoverOrchestrator(
        conf,
        primary,
        standby,
        _proxy_admin(conf),
        skip_freeze=opts.skip_freeze,
        dry_run=opts.dry_run,
        force=opts.force,
        sequence_buffer=opts.sequence_buffer,
        lag_threshold=opts.lag_threshold,
    )
    logging.info(
        'failover %s -> %s%s%s',
        primary.host,
        standby.host,
        ' (skip freeze)' if opts.skip_freeze else '',
        ' (dry run)' if opts.dry_run else '',
    )
    # ask user confirmation if necessary.
    if not opts.yes and not opts.dry_run:
        helpers.confirm()
    helpers.register_sigterm_handler()
    run = orchestrator.execute()
    _print(run.as_dict(), opts.json)
    sys.exit(EXIT_CODES[run.outcome])


def health(opts, conf):
    """
    Probe both nodes and the pooler.
    """
    primary, standby = node_admins(conf)
    prober = HealthProber(conf)
    lag_threshold = opts.lag_threshold
    if lag_threshold is None:
        lag_threshold = conf.getint('replication', 'lag_threshold')
    result = {}
    reports = []
    for role, db in ((ROLE_PRIMARY, primary), (ROLE_STANDBY, standby)):
        try:
            report = prober.probe(db, role)
        except ConnectivityError as exc:
            report = exc.report
        reports.append(report)
        result[role] = dataclasses.asdict(report)
    found = problems(reports, lag_threshold)
    try:
        result['proxy'] = dataclasses.asdict(prober.probe_proxy(ProxyController(conf, _proxy_admin(conf))))
    except ConnectivityError as exc:
        result['proxy'] = {'reachable': False, 'error': str(exc)}
        found.append('pgbouncer is unreachable')
    result['problems'] = found
    _print(result, opts.json)
    if found:
        for problem in found:
            logging.error(problem)
        sys.exit(1)


def _replication(conf):
    primary, standby = node_admins(conf)
    return ReplicationController(conf, primary, standby, HealthProber(conf))


def replication(opts, conf):
    """
    Operate replication channel directly.
    """
    ctl = _replication(conf)
    channel = ctl.channel()
    if opts.operation == 'pause':
        ctl.pause(channel)
        _print({'state': channel.state})
    elif opts.operation == 'resume':
        lag = ctl.resume(channel)
        _print({'state': channel.state, 'lag_bytes': lag})
    elif opts.operation == 'verify':
        _print({'state': channel.state, 'tables': ctl.verify(channel)})


def sync_sequences(opts, conf):
    """
    Advance standby sequences past primary ones.
    """
    primary, standby = node_admins(conf)
    buffer = opts.buffer if opts.buffer is not None else conf.getint('sequences', 'buffer')
    ledger = SequenceSynchronizer(conf, primary, standby).sync(buffer)
    _print([dataclasses.asdict(s) for s in ledger], opts.json)
    if any(s.status == SEQ_ERROR for s in ledger):
        sys.exit(1)


def proxy(opts, conf):
    """
    Operate pooler directly.
    """
    ctl = ProxyController(conf, _proxy_admin(conf))
    if opts.operation == 'pause':
        ctl.pause()
    elif opts.operation == 'resume':
        ctl.resume()
    elif opts.operation == 'swap-upstream':
        if not opts.host:
            raise RuntimeError('swap-upstream needs a host')
        ctl.swap_upstream(opts.host)
    _print(dataclasses.asdict(ctl.state()), opts.json)


def show(opts, conf):
    """
    Render run log.
    """
    run, ledger = load_run(opts.file)
    info = run.as_dict()
    info['sequences'] = [dataclasses.asdict(s) for s in ledger]
    if run.outcome is None:
        logging.warning('Run %s has no outcome: it was interrupted.', run.id)
    _print(info, opts.json)


def parse_args(argv=None):
    """
    Parse multiple commands.
    """
    arg = argparse.ArgumentParser(
        description="""
        pgfailover utility
        """
    )
    arg.add_argument(
        '-c',
        '--config',
        dest='config_file',
        type=str,
        metavar='<path>',
        default='/etc/pgfailover.conf',
        help='path to pgfailover main config file',
    )
    arg.add_argument('--log-level', dest='log_level', type=str, metavar='<level>', help='override config log level')
    arg.add_argument(
        '--run-log-dir', dest='run_log_dir', type=str, metavar='<path>', help='override config run log directory'
    )
    arg.set_defaults(action=lambda *_: arg.print_help())

    subarg = arg.add_subparsers(
        help='possible actions', title='subcommands', description='for more info, see <subcommand> -h'
    )

    fail_arg = subarg.add_parser(
        'failover',
        help='fail over from primary to standby',
        description="""
        Pause pgbouncer, freeze primary, synchronize sequences,
        promote standby, point pgbouncer to it and resume.
        Before standby promotion every failure is rolled back.
        """,
    )
    fail_arg.add_argument(
        '--skip-freeze',
        help='do not freeze primary, accepting potential data loss (primary is lost)',
        default=False,
        action='store_true',
    )
    fail_arg.add_argument(
        '--dry-run', help='check preconditions and show planned steps only', default=False, action='store_true'
    )
    fail_arg.add_argument(
        '--force', help='promote standby even if lag exceeds threshold', default=False, action='store_true'
    )
    fail_arg.add_argument(
        '--sequence-buffer', help='override sequence buffer', type=int, default=None, metavar='<int>'
    )
    fail_arg.add_argument(
        '--lag-threshold', help='override lag threshold in bytes', type=int, default=None, metavar='<bytes>'
    )
    fail_arg.add_argument(
        '-y', '--yes', help='do not ask confirmation before proceeding', default=False, action='store_true'
    )
    fail_arg.add_argument('-j', '--json', help='show run in json format', action='store_true', default=False)
    fail_arg.set_defaults(action=failover)

    health_arg = subarg.add_parser('health', help='probe nodes and pooler')
    health_arg.add_argument(
        '--lag-threshold', help='override lag threshold in bytes', type=int, default=None, metavar='<bytes>'
    )
    health_arg.add_argument('-j', '--json', help='show output in json format', action='store_true', default=False)
    health_arg.set_defaults(action=health)

    repl_arg = subarg.add_parser('replication', help='operate replication channel')
    repl_arg.add_argument('operation', choices=['pause', 'resume', 'verify'])
    repl_arg.set_defaults(action=replication)

    seq_arg = subarg.add_parser('sync-sequences', help='advance standby sequences')
    seq_arg.add_argument('-b', '--buffer', help='override sequence buffer', type=int, default=None, metavar='<int>')
    seq_arg.add_argument('-j', '--json', help='show output in json format', action='store_true', default=False)
    seq_arg.set_defaults(action=sync_sequences)

    proxy_arg = subarg.add_parser('proxy', help='operate pgbouncer')
    proxy_arg.add_argument('operation', choices=['pause', 'resume', 'status', 'swap-upstream'])
    proxy_arg.add_argument('host', nargs='?', default=None, metavar='<fqdn>', help='new upstream for swap-upstream')
    proxy_arg.add_argument('-j', '--json', help='show output in json format', action='store_true', default=False)
    proxy_arg.set_defaults(action=proxy)

    show_arg = subarg.add_parser('show', help='render failover run log')
    show_arg.add_argument('file', metavar='<path>', help='run log file')
    show_arg.add_argument('-j', '--json', help='show output in json format', action='store_true', default=False)
    show_arg.set_defaults(action=show)

    try:
        return arg.parse_args(argv)
    except ValueError as err:
        arg.exit(message='%s\n' % err)
        exit(1)
