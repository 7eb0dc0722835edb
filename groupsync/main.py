"""
Command line entry point for groupsync.

    groupsync [-c CONFIG] [-v] sync [-d] [-m FILE] [--timeout S] [--fail-fast] [source ... target]
    groupsync [-c CONFIG] [-v] ls <backend> <group>...
    groupsync version

Exit codes: 0 on success, 1 when a mapping, diff, commit or group lookup
fails, 2 on configuration or mapping-file errors.
"""

import sys
import time
import logging
import argparse
from typing import List, Optional

from groupsync import __version__
from groupsync.config import load_config
from groupsync.errors import ConfigurationError, GroupsyncError, MappingError
from groupsync.mappings import Mapping, load_mapping_file, parse_cli_mapping
from groupsync.logging_setup import setup_logging
from groupsync.registry import DEFAULT_KINDS, ConnectorRegistry
from groupsync.services.base import Deadline

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class SyncRunner:
    """
    Runs a list of mappings against one connector registry.

    Each mapping is diffed and committed on its own; a failing mapping is
    logged and the remaining ones still run unless ``fail_fast`` is set.
    """

    def __init__(self, registry: ConnectorRegistry, dry_run: bool = False,
                 fail_fast: bool = False, deadline: Optional[Deadline] = None, out=None):
        self.registry = registry
        self.dry_run = dry_run
        self.fail_fast = fail_fast
        self.deadline = deadline
        self.out = out or sys.stdout

        self.sync_stats = {
            'mappings_processed': 0,
            'mappings_failed': 0,
            'total_users_added': 0,
            'total_users_removed': 0,
            'runtime_seconds': 0,
        }

    def run(self, mappings: List[Mapping]) -> int:
        """
        Sync every mapping.

        Returns:
            Exit code

        Raises:
            ConfigurationError: If a connector cannot be built from its section
        """
        start = time.monotonic()

        for mapping in mappings:
            try:
                self._sync_mapping(mapping)
                self.sync_stats['mappings_processed'] += 1
            except ConfigurationError:
                raise
            except GroupsyncError as e:
                self.sync_stats['mappings_failed'] += 1
                logger.error(f"Failed to sync {mapping.target}: {e}")
                if self.fail_fast:
                    logger.error("Stopping after first failure")
                    break

        self.sync_stats['runtime_seconds'] = time.monotonic() - start
        self._log_sync_summary()

        return EXIT_FAILURE if self.sync_stats['mappings_failed'] else EXIT_OK

    def _sync_mapping(self, mapping: Mapping):
        logger.info(f"Syncing into {mapping.target}")

        mapping.diff(self.registry, self.deadline)
        print(mapping.describe(), file=self.out)

        if self.dry_run:
            print("Dry run, not committing changes.", file=self.out)
            return

        result = mapping.commit_changes(self.registry, deadline=self.deadline)
        self.sync_stats['total_users_added'] += len(result.add)
        self.sync_stats['total_users_removed'] += len(result.rem)

    def _log_sync_summary(self):
        stats = self.sync_stats
        logger.info(
            f"Sync summary: {stats['mappings_processed']} mappings synced, "
            f"{stats['mappings_failed']} failed, {stats['total_users_added']} added, "
            f"{stats['total_users_removed']} removed in {stats['runtime_seconds']:.2f} seconds"
        )


def list_groups(registry: ConnectorRegistry, backend: str, groups: List[str],
                deadline: Optional[Deadline] = None, out=None) -> int:
    """
    Print the members of each group.

    A single group that cannot be listed is an error. When several groups are
    asked for, failing ones are logged and skipped.
    """
    out = out or sys.stdout
    connector = registry.connector_from_name(backend)

    for group in groups:
        try:
            members = connector.group_members(group, deadline)
        except ConfigurationError:
            raise
        except GroupsyncError as e:
            if len(groups) == 1:
                logger.error(f"Failed to list {backend}:{group}: {e}")
                return EXIT_FAILURE
            logger.error(f"Skipping {backend}:{group}: {e}")
            continue

        print(f"{backend}:{group}", file=out)
        for member in members:
            print(f"- {member}", file=out)

    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='groupsync', description='Synchronize group memberships between backends')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command')
    subparsers.required = True

    sync_parser = subparsers.add_parser('sync', help='Sync source groups into a target group')
    sync_parser.add_argument('--dry-run', '-d', action='store_true',
                             help='Show the changes without applying them')
    sync_parser.add_argument('--mapping-file', '-m', dest='mapping_file',
                             help='YAML file with the mappings to sync')
    sync_parser.add_argument('--timeout', type=float, help='Give up on network calls after this many seconds')
    sync_parser.add_argument('--fail-fast', action='store_true', help='Stop at the first failing mapping')
    sync_parser.add_argument('groups', nargs='*', metavar='backend:group',
                             help='Source group(s) followed by the target group')

    ls_parser = subparsers.add_parser('ls', help='List the members of groups')
    ls_parser.add_argument('--timeout', type=float, help='Give up on network calls after this many seconds')
    ls_parser.add_argument('backend', help='Backend name')
    ls_parser.add_argument('groups', nargs='+', metavar='group', help='Group name(s)')

    subparsers.add_parser('version', help='Print the version')

    return parser


def _load_mappings(args) -> List[Mapping]:
    if args.mapping_file:
        if args.groups:
            raise MappingError("give either a mapping file or source and target groups, not both")
        return load_mapping_file(args.mapping_file)
    return [parse_cli_mapping(args.groups)]


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the requested command and return its exit code."""
    args = build_parser().parse_args(argv)

    if args.command == 'version':
        print(f"groupsync {__version__}")
        return EXIT_OK

    try:
        config = load_config(args.config, known_kinds=list(DEFAULT_KINDS))
    except ConfigurationError as e:
        setup_logging({}, args.verbose)
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    setup_logging(config.get('logging'), args.verbose)

    deadline = Deadline.after(args.timeout) if args.timeout else None

    try:
        with ConnectorRegistry(config) as registry:
            if args.command == 'ls':
                return list_groups(registry, args.backend, args.groups, deadline)

            mappings = _load_mappings(args)
            if not mappings:
                logger.warning("No mappings to sync")
                return EXIT_OK

            runner = SyncRunner(registry, dry_run=args.dry_run, fail_fast=args.fail_fast, deadline=deadline)
            return runner.run(mappings)
    except (ConfigurationError, MappingError) as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except GroupsyncError as e:
        logger.error(f"{e}")
        return EXIT_FAILURE


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
