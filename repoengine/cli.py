#!/usr/bin/env python3
"""repoengine debugging shell: runs one engine operation and prints JSON."""

import argparse
import dataclasses
import json
import logging
import sys
from enum import Enum
from pathlib import Path

from repoengine.engine import RepositoryEngine
from repoengine.errors import ConflictPending, EngineError
from repoengine.lib.config import load_engine_config
from repoengine.lib.types import ResetMode
from repoengine.ops.conflicts import SIDES


def _plain(value):
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _plain(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def emit(value) -> int:
    print(json.dumps(_plain(value), indent=2, default=str))
    return 0


def cmd_status(engine, args):
    return emit(engine.get_working_tree_status(args.repo))


def cmd_log(engine, args):
    return emit(engine.get_commits(args.repo, args.ref, args.skip, args.limit))


def cmd_show(engine, args):
    return emit(engine.get_commit_details(args.repo, args.commit))


def cmd_diff(engine, args):
    return emit(engine.get_file_diff(args.repo, args.path, staged=args.staged))


def cmd_blame(engine, args):
    return emit(engine.blame(args.repo, args.path, args.ref))


def cmd_branches(engine, args):
    return emit(engine.list_branches(args.repo))


def cmd_ahead_behind(engine, args):
    return emit(engine.ahead_behind(args.repo, args.branch))


def cmd_stage(engine, args):
    for path in args.paths:
        engine.stage_file(args.repo, path)
    return emit(engine.get_working_tree_status(args.repo))


def cmd_stage_hunk(engine, args):
    old = engine.get_staged_content(args.repo, args.path)
    new = engine.get_working_file_content(args.repo, args.path)
    if args.line is None:
        engine.stage_hunk(args.repo, args.path, old, new, args.hunk)
    else:
        engine.stage_line(args.repo, args.path, old, new, args.hunk, args.line)
    return emit(engine.get_file_diff(args.repo, args.path, staged=True))


def cmd_unstage(engine, args):
    for path in args.paths:
        engine.unstage_file(args.repo, path)
    return emit(engine.get_working_tree_status(args.repo))


def cmd_commit(engine, args):
    return emit({"id": engine.commit(args.repo, args.message)})


def cmd_cherry_pick(engine, args):
    return emit(engine.cherry_pick(args.repo, args.commits))


def cmd_reorder(engine, args):
    return emit(engine.reorder_commits(args.repo, args.commits))


def cmd_squash(engine, args):
    return emit(engine.squash(args.repo, args.commits, args.message))


def cmd_drop(engine, args):
    return emit(engine.drop(args.repo, args.commit))


def cmd_revert(engine, args):
    return emit(engine.revert(args.repo, args.commit))


def cmd_amend(engine, args):
    return emit(engine.amend(args.repo, args.commit, args.message))


def cmd_merge(engine, args):
    return emit(engine.merge(args.repo, args.branch, args.message))


def cmd_rebase(engine, args):
    return emit(engine.rebase(args.repo, args.onto))


def cmd_conflicts(engine, args):
    if args.path:
        return emit(engine.get_conflict_regions(args.repo, args.path))
    return emit(engine.get_conflicts(args.repo))


def cmd_resolve(engine, args):
    engine.resolve_conflict(args.repo, args.path, args.side, args.region)
    return emit(engine.get_conflict_regions(args.repo, args.path))


def cmd_reset(engine, args):
    return emit(engine.reset(args.repo, args.ref, ResetMode(args.mode)))


def cmd_sequencer(engine, args):
    action = {"continue": engine.continue_operation, "abort": engine.abort_operation, "skip": engine.skip_operation}
    return emit(action[args.command](args.repo))


def cmd_fetch(engine, args):
    engine.fetch(args.repo, args.remote, prune=args.prune, progress=lambda line: print(line, file=sys.stderr))
    return 0


def cmd_push_tag(engine, args):
    engine.push_tag(args.repo, args.tag, args.remote)
    return 0


def cmd_stash_file(engine, args):
    engine.stash_file(args.repo, args.path, args.message)
    return emit(engine.get_working_tree_status(args.repo))


def cmd_snapshots(engine, args):
    return emit(engine.list_snapshots(args.repo))


def cmd_reflog(engine, args):
    return emit(engine.get_reflog(args.repo, args.limit))


def main(argv=None):
    parser = argparse.ArgumentParser(prog='repoengine', description='Local repository engine shell')
    parser.add_argument('--repo', '-C', default='.', help='Repository path (default: cwd)')
    parser.add_argument('--config', help='Path to engine.env')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    p = subparsers.add_parser('status', help='Working tree status')
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser('log', help='Commit history')
    p.add_argument('ref', nargs='?', default='HEAD')
    p.add_argument('--skip', type=int, default=0)
    p.add_argument('--limit', '-n', type=int, default=None)
    p.set_defaults(func=cmd_log)

    p = subparsers.add_parser('show', help='Commit with file changes')
    p.add_argument('commit')
    p.set_defaults(func=cmd_show)

    p = subparsers.add_parser('diff', help='Structured diff of one file')
    p.add_argument('path')
    p.add_argument('--staged', action='store_true', help='HEAD vs index instead of index vs worktree')
    p.set_defaults(func=cmd_diff)

    p = subparsers.add_parser('blame', help='Line attribution')
    p.add_argument('path')
    p.add_argument('--ref', default='HEAD')
    p.set_defaults(func=cmd_blame)

    p = subparsers.add_parser('branches', help='List branches')
    p.set_defaults(func=cmd_branches)

    p = subparsers.add_parser('ahead-behind', help='Ahead/behind remote-tracking branch')
    p.add_argument('branch', nargs='?')
    p.set_defaults(func=cmd_ahead_behind)

    p = subparsers.add_parser('stage', help='Stage whole files')
    p.add_argument('paths', nargs='+')
    p.set_defaults(func=cmd_stage)

    p = subparsers.add_parser('stage-hunk', help='Stage one hunk (or one line of it)')
    p.add_argument('path')
    p.add_argument('hunk', type=int)
    p.add_argument('--line', type=int, help='Line index within the hunk')
    p.set_defaults(func=cmd_stage_hunk)

    p = subparsers.add_parser('unstage', help='Unstage whole files')
    p.add_argument('paths', nargs='+')
    p.set_defaults(func=cmd_unstage)

    p = subparsers.add_parser('commit', help='Commit the index')
    p.add_argument('-m', '--message', required=True)
    p.set_defaults(func=cmd_commit)

    p = subparsers.add_parser('cherry-pick', help='Apply commits onto HEAD')
    p.add_argument('commits', nargs='+')
    p.set_defaults(func=cmd_cherry_pick)

    p = subparsers.add_parser('reorder', help='Rewrite the top commits in a new order (newest first)')
    p.add_argument('commits', nargs='+')
    p.set_defaults(func=cmd_reorder)

    p = subparsers.add_parser('squash', help='Squash the top commits into one')
    p.add_argument('commits', nargs='+')
    p.add_argument('-m', '--message', required=True)
    p.set_defaults(func=cmd_squash)

    p = subparsers.add_parser('drop', help='Remove one commit from history')
    p.add_argument('commit')
    p.set_defaults(func=cmd_drop)

    p = subparsers.add_parser('revert', help='Revert a commit')
    p.add_argument('commit')
    p.set_defaults(func=cmd_revert)

    p = subparsers.add_parser('amend', help='Amend the tip commit')
    p.add_argument('commit', nargs='?', default='HEAD')
    p.add_argument('-m', '--message')
    p.set_defaults(func=cmd_amend)

    p = subparsers.add_parser('merge', help='Merge a branch (always a merge commit)')
    p.add_argument('branch')
    p.add_argument('-m', '--message')
    p.set_defaults(func=cmd_merge)

    p = subparsers.add_parser('rebase', help='Replay the current branch onto another ref')
    p.add_argument('onto')
    p.set_defaults(func=cmd_rebase)

    p = subparsers.add_parser('conflicts', help='Conflict regions of one file, or of every conflicted file')
    p.add_argument('path', nargs='?')
    p.set_defaults(func=cmd_conflicts)

    p = subparsers.add_parser('resolve', help='Take one side of a conflicted file')
    p.add_argument('path')
    p.add_argument('side', choices=SIDES)
    p.add_argument('--region', type=int, help='Resolve only this region')
    p.set_defaults(func=cmd_resolve)

    p = subparsers.add_parser('reset', help='Reset HEAD')
    p.add_argument('ref')
    p.add_argument('--mode', choices=[m.value for m in ResetMode], default=ResetMode.MIXED.value)
    p.set_defaults(func=cmd_reset)

    for name in ('continue', 'abort', 'skip'):
        p = subparsers.add_parser(name, help=f'{name.capitalize()} the pending operation')
        p.set_defaults(func=cmd_sequencer)

    p = subparsers.add_parser('fetch', help='Fetch from a remote')
    p.add_argument('remote', nargs='?')
    p.add_argument('--prune', action='store_true')
    p.set_defaults(func=cmd_fetch)

    p = subparsers.add_parser('push-tag', help='Publish a tag')
    p.add_argument('tag')
    p.add_argument('remote', nargs='?')
    p.set_defaults(func=cmd_push_tag)

    p = subparsers.add_parser('stash-file', help='Stash the changes of one file')
    p.add_argument('path')
    p.add_argument('-m', '--message')
    p.set_defaults(func=cmd_stash_file)

    p = subparsers.add_parser('snapshots', help='List snapshots')
    p.set_defaults(func=cmd_snapshots)

    p = subparsers.add_parser('reflog', help='Reflog entries')
    p.add_argument('--limit', '-n', type=int, default=50)
    p.set_defaults(func=cmd_reflog)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.repo = str(Path(args.repo).resolve())

    config = load_engine_config(Path(args.config) if args.config else None)
    with RepositoryEngine(config) as engine:
        try:
            return args.func(engine, args)
        except ConflictPending as e:
            print(f"CONFLICT: {e}", file=sys.stderr)
            for path in e.files:
                print(f"  {path}", file=sys.stderr)
            print(f"Options: {', '.join(e.options)}", file=sys.stderr)
            return 3
        except EngineError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1


if __name__ == '__main__':
    sys.exit(main())
