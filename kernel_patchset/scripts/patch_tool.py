#!/usr/bin/env python3
"""
Patch Compatibility Tool for kernel spec files.

Command-line interface for inspecting the patch ledger, testing disabled
patches against the reference kernel, validating the enabled set
cumulatively and enabling or disabling patches in the spec file.
"""

import argparse
import logging
import shutil
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from kernel_patchset.config.settings import PatchsetConfig, load_config
from kernel_patchset.errors import ConcurrentMutationConflict, PatchsetError, SequenceBreak
from kernel_patchset.ledger.ledger_file import LedgerFile
from kernel_patchset.ledger.ledger_mutator import EditPolicy, LedgerMutator
from kernel_patchset.ledger.ledger_parser import LedgerParser
from kernel_patchset.ledger.patch_record import TrialResult
from kernel_patchset.patch.patch_apply import PatchApplyTool
from kernel_patchset.patch.patch_tester import PatchTester
from kernel_patchset.patch.sequence_validator import SequenceValidator
from kernel_patchset.report.results_store import ResultsStore
from kernel_patchset.report.status_reporter import StatusReporter
from kernel_patchset.source.source_provider import ReferenceSourceProvider
from kernel_patchset.utils.file_utils import ensure_directory, is_within

EXIT_FAILURE = 1
EXIT_SEQUENCE_BREAK = 2
EXIT_CONFLICT = 3

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(verbose: bool = False, config: PatchsetConfig = None):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if config is not None and config.log_to_file:
        log_dir = ensure_directory(config.workdir_path / "logs")
        log_file = log_dir / f"patchset_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)


def load_ledger(config: PatchsetConfig):
    """Parse the ledger under its lock; returns (ledger, digest)."""
    ledger_file = LedgerFile(config.spec_path, config.lock_timeout, config.read_lock_timeout)
    text, digest = ledger_file.read()
    return LedgerParser().parse(text), digest


def make_reporter(config: PatchsetConfig, args, version: str = None) -> StatusReporter:
    color = not args.no_color and sys.stdout.isatty()
    return StatusReporter(spec_name=config.spec_path.name, color=color, version=version)


def make_provider(config: PatchsetConfig) -> ReferenceSourceProvider:
    return ReferenceSourceProvider(
        config.workdir_path,
        url_template=config.source_url_template,
        retries=config.download_retries,
        timeout=config.download_timeout
    )


def status_command(args, config: PatchsetConfig):
    """Show patch status command handler."""
    ledger, _digest = load_ledger(config)
    reporter = make_reporter(config, args, ledger.version)
    print(reporter.report(ledger.records))


def download_command(args, config: PatchsetConfig):
    """Download reference source command handler."""
    ledger, _digest = load_ledger(config)
    tree = make_provider(config).fetch(ledger.version)
    print(f"Kernel source ready at {tree}")


def test_command(args, config: PatchsetConfig):
    """Test patches command handler."""
    ledger, _digest = load_ledger(config)

    if args.patches:
        records = []
        for number in args.patches:
            record = ledger.get(number)
            if record is None:
                raise PatchsetError(f"Patch {number} is not declared in {config.spec_path.name}")
            records.append(record)
    elif args.all:
        records = list(ledger.records)
    else:
        records = ledger.disabled()

    if not records:
        print("No patches to test")
        return

    tree = make_provider(config).fetch(ledger.version)
    tester = PatchTester(
        config.root_path,
        tree,
        config.scratch_path,
        fuzz=config.fuzz,
        apply_tool=PatchApplyTool(timeout=config.patch_timeout),
        sparse=config.sparse_copies
    )

    print(f"Testing {len(records)} patches against Linux {ledger.version}...")

    def show(outcome):
        print(f"Testing patch {outcome.number} {Path(outcome.filename).name:<50} ... {outcome.result.value}")

    outcomes = tester.test_many(records, max_workers=config.max_workers, on_result=show)

    store = ResultsStore(config.results_path, config.spec_path.name)
    store.append_run(ledger.version, outcomes)

    reporter = make_reporter(config, args, ledger.version)
    print()
    print(reporter.report(records, outcomes, ledger))
    for outcome in outcomes:
        if outcome.result == TrialResult.FAILED and outcome.reject_artifacts and args.show_rejects:
            print(f"Rejects for patch {outcome.number} ({outcome.filename}):")
            for fragment in outcome.reject_artifacts:
                print(f"--- {fragment.path}")
                print(fragment.content)
    print(f"Results saved to: {config.results_path}")


def results_command(args, config: PatchsetConfig):
    """Show stored test results command handler."""
    store = ResultsStore(config.results_path, config.spec_path.name)
    if not store.exists():
        raise PatchsetError("No test results found. Run the 'test' command first.")
    ledger, _digest = load_ledger(config)
    outcomes = store.load()
    tested = [record for record in (ledger.get(o.number) for o in outcomes) if record is not None]
    print(make_reporter(config, args, ledger.version).report(tested, outcomes, ledger))


def validate_command(args, config: PatchsetConfig):
    """Cumulative validation command handler."""
    ledger, _digest = load_ledger(config)
    enabled = ledger.enabled()
    tree = make_provider(config).fetch(ledger.version)
    validator = SequenceValidator(
        config.root_path,
        tree,
        config.scratch_path,
        fuzz=config.sequence_fuzz,
        apply_tool=PatchApplyTool(timeout=config.patch_timeout),
        reject_dir=config.rejects_path
    )
    report = validator.validate_sequence(enabled)

    print("Cumulative Test Results:")
    print(f"  Total patches: {report.total}")
    print(f"  Successful: {report.applied_count}")
    if report.first_failure is not None:
        failure = report.first_failure
        print(f"  Failed: patch {failure.number} ({failure.filename})")
        print(f"  Reason: {failure.message}")
        if failure.reject_dir:
            print(f"  Reject files saved to: {failure.reject_dir}")
        for fragment in failure.reject_artifacts:
            print(f"--- {fragment.path}")
            print(fragment.content)
    report.raise_for_failure()
    print("All enabled patches applied successfully in sequence")


def enable_command(args, config: PatchsetConfig):
    """Enable patches command handler."""
    _ledger, digest = load_ledger(config)
    mutator = LedgerMutator(config.spec_path, config.lock_timeout)
    mutator.enable(args.patches, expected_digest=digest)
    print(f"Enabled patches: {', '.join(str(n) for n in args.patches)}")


def disable_command(args, config: PatchsetConfig):
    """Disable patches command handler."""
    _ledger, digest = load_ledger(config)
    mutator = LedgerMutator(config.spec_path, config.lock_timeout)
    mutator.disable(args.patches, expected_digest=digest)
    print(f"Disabled patches: {', '.join(str(n) for n in args.patches)}")


def enable_tested_command(args, config: PatchsetConfig):
    """Enable patches from stored test results command handler."""
    store = ResultsStore(config.results_path, config.spec_path.name)
    if not store.exists():
        raise PatchsetError("No test results found. Run the 'test' command first.")

    include_fuzzy = args.command == 'enable-fuzzy' or config.allow_fuzzy
    if include_fuzzy:
        logging.getLogger(__name__).warning(
            "Enabling patches that apply with fuzz (may cause issues)"
        )
    ledger, digest = load_ledger(config)
    edits = EditPolicy(include_fuzzy=include_fuzzy).select(ledger, store.load())
    if not edits:
        print("No tested patches to enable")
        return
    LedgerMutator(config.spec_path, config.lock_timeout).apply(edits, expected_digest=digest)
    print(f"Enabled {len(edits)} patches: {', '.join(str(e.number) for e in edits)}")


def clean_command(args, config: PatchsetConfig):
    """Remove the working directory command handler."""
    workdir = config.workdir_path
    if not workdir.exists():
        print("Nothing to clean")
        return
    if not workdir.is_dir() or workdir == config.root_path:
        raise PatchsetError(f"Refusing to remove {workdir}")
    if not is_within(workdir, config.root_path) and not args.force:
        raise PatchsetError(f"Refusing to remove {workdir}; pass --force to remove a directory "
                            f"outside the project root")
    shutil.rmtree(workdir)
    print(f"Removed {workdir}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Patch compatibility tool for kernel spec files"
    )

    parser.add_argument('--spec', help='Path to the spec file (default: linux.spec)')
    parser.add_argument('--project-root', help='Directory patch paths are relative to')
    parser.add_argument('--workdir', help='Working directory (default: <project-root>/temp-kernel)')
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--no-color', action='store_true', help='Disable coloured output')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    status_parser = subparsers.add_parser('status', help='Show current status of all patches')
    status_parser.set_defaults(func=status_command)

    download_parser = subparsers.add_parser('download', help='Download and extract kernel source')
    download_parser.set_defaults(func=download_command)

    test_parser = subparsers.add_parser('test', help='Test disabled patches against the kernel')
    test_parser.add_argument('patches', nargs='*', type=int, help='Patch numbers to test')
    test_parser.add_argument('--all', action='store_true', help='Test every declared patch')
    test_parser.add_argument('--fuzz', type=int, help='Fuzz tolerance for the tolerant attempt')
    test_parser.add_argument('--jobs', '-j', type=int, help='Concurrent tests (0 = CPU count)')
    test_parser.add_argument('--show-rejects', action='store_true', help='Print reject hunks')
    test_parser.set_defaults(func=test_command)

    results_parser = subparsers.add_parser('results', help='Show stored test results')
    results_parser.set_defaults(func=results_command)

    validate_parser = subparsers.add_parser(
        'validate', help='Apply all enabled patches in order, like the build'
    )
    validate_parser.set_defaults(func=validate_command)

    enable_parser = subparsers.add_parser('enable', help='Enable patches by number')
    enable_parser.add_argument('patches', nargs='+', type=int, help='Patch numbers')
    enable_parser.set_defaults(func=enable_command)

    disable_parser = subparsers.add_parser('disable', help='Disable patches by number')
    disable_parser.add_argument('patches', nargs='+', type=int, help='Patch numbers')
    disable_parser.set_defaults(func=disable_command)

    clean_parser = subparsers.add_parser('enable-clean', help='Enable all patches that tested clean')
    clean_parser.set_defaults(func=enable_tested_command)

    fuzzy_parser = subparsers.add_parser(
        'enable-fuzzy', help='Enable patches that tested clean or fuzzy (risky)'
    )
    fuzzy_parser.set_defaults(func=enable_tested_command)

    remove_parser = subparsers.add_parser('clean', help='Remove the working directory')
    remove_parser.add_argument('--force', action='store_true',
                               help='Allow removing a workdir outside the project root')
    remove_parser.set_defaults(func=clean_command)

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_FAILURE)

    try:
        config = load_config(args.config, overrides={
            'spec_file': args.spec,
            'project_root': args.project_root,
            'workdir': args.workdir,
            'fuzz': getattr(args, 'fuzz', None),
            'max_workers': getattr(args, 'jobs', None),
        })
    except PatchsetError as e:
        print(f"Error: {e}")
        sys.exit(EXIT_FAILURE)

    setup_logging(args.verbose, config)

    try:
        args.func(args, config)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(EXIT_FAILURE)
    except SequenceBreak as e:
        print(f"Error: {e}")
        sys.exit(EXIT_SEQUENCE_BREAK)
    except ConcurrentMutationConflict as e:
        print(f"Error: {e}")
        sys.exit(EXIT_CONFLICT)
    except PatchsetError as e:
        print(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_FAILURE)


if __name__ == '__main__':
    main()
