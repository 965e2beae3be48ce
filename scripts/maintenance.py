#!/usr/bin/env python3
"""
Command-line maintenance utility: embedding backfill, near-duplicate scan,
orphan cleanup and the maintenance run log.
"""

import argparse
import sys
import json
from pathlib import Path
from typing import List

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from recall.core.engine import Engine
from recall.core.errors import MaintenanceError, ValidationError
from recall.core.models import MaintenanceRun


def format_run(run: MaintenanceRun) -> str:
    """Format a maintenance run summary for display."""
    lines = []

    lines.append(f"Operation: {run.operation}{' (dry run)' if run.dry_run else ''}")
    lines.append(f"Run ID: {run.run_id}")
    if run.completed_at and run.started_at:
        duration = run.completed_at - run.started_at
        lines.append(f"Duration: {duration.total_seconds():.2f} seconds")

    if run.failed:
        lines.append(f"Status: COMPLETED WITH FAILURES ({run.failed} failed)")
    elif run.stopped_early:
        lines.append("Status: STOPPED EARLY")
    else:
        lines.append("Status: SUCCESS")

    lines.append(f"Processed: {run.processed}")
    lines.append(f"Failed: {run.failed}")
    lines.append(f"Skipped: {run.skipped}")
    if run.batches:
        lines.append(f"Batches: {run.batches}")
    if run.flagged_duplicates:
        lines.append(f"Flagged duplicates: {run.flagged_duplicates}")
    if run.cost_estimate:
        lines.append(f"Cost estimate: ${run.cost_estimate:.6f}")

    if run.metadata:
        lines.append("Details:")
        for key, value in run.metadata.items():
            lines.append(f"  {key}: {value}")

    if run.duplicates:
        lines.append("Duplicate candidates (review only, nothing was removed):")
        for candidate in run.duplicates:
            lines.append(f"  - {candidate.item_id} ~ {candidate.duplicate_of} ({candidate.score:.3f})")

    # Don't flood output
    if run.errors:
        lines.append("Errors:")
        for error in run.errors[:10]:
            lines.append(f"  - {error}")
        if len(run.errors) > 10:
            lines.append(f"  ... {len(run.errors) - 10} more")

    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Embedding maintenance utilities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --backfill                        # Embed everything not yet ready
  %(prog)s --backfill --dry-run              # Count work and estimate cost only
  %(prog)s --backfill --type file --batch-size 10
  %(prog)s --dedup knowledge --scope user-1  # Flag near-duplicate knowledge entries
  %(prog)s --cleanup-orphans                 # Remove vectors of deleted content
  %(prog)s --list-runs                       # Show the maintenance run log

Environment variables:
- DB_PATH=./data/recall.db (content store location)
- EMBED_PROVIDER=hash|sentence-transformers|openai
- VECTOR_PROVIDER=memory|faiss
- DEDUP_THRESHOLD=0.95
        """
    )

    parser.add_argument("--backfill", "-b", action="store_true", help="Embed content items that are not ready")
    parser.add_argument("--dedup", "-d", metavar="TYPE", help="Scan one content type for near-duplicates")
    parser.add_argument("--cleanup-orphans", "-c", action="store_true",
                        help="Remove vector records whose content item no longer exists")
    parser.add_argument("--list-runs", "-l", action="store_true", help="Show recent maintenance runs")

    parser.add_argument("--type", "-t", help="Content type for backfill (message, file, transcript, knowledge)")
    parser.add_argument("--scope", "-s", help="Restrict to one scope")
    parser.add_argument("--batch-size", type=int, default=None, help="Backfill batch size")
    parser.add_argument("--limit", type=int, default=None, help="Maximum items to backfill")
    parser.add_argument("--threshold", type=float, default=None, help="Dedup similarity threshold")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")

    parser.add_argument("--json", "-j", action="store_true",
                        help="Output results as JSON instead of human-readable text")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output")
    return parser


def main(argv: List[str] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not (args.backfill or args.dedup or args.cleanup_orphans or args.list_runs):
        parser.error("Must specify at least one maintenance operation")

    # Progress lines would corrupt JSON output
    verbose = not (args.quiet or args.json)

    try:
        with Engine.from_settings() as engine:
            if args.list_runs:
                runs = engine.maintenance.list_runs()
                if args.json:
                    print(json.dumps(runs, indent=2, default=str))
                else:
                    for run in runs:
                        print(f"{run['started_at']}  {run['operation']:<15} processed={run['processed']} "
                              f"failed={run['failed']} flagged={run['flagged_duplicates']}")
                if not (args.backfill or args.dedup or args.cleanup_orphans):
                    return 0

            runs: List[MaintenanceRun] = []
            if args.backfill:
                if verbose:
                    print("Running embedding backfill...")
                runs.append(engine.maintenance.run_backfill(
                    content_type=args.type,
                    scope=args.scope,
                    batch_size=args.batch_size,
                    dry_run=args.dry_run,
                    limit=args.limit,
                ))

            if args.dedup:
                if verbose:
                    print(f"Scanning {args.dedup} items for near-duplicates...")
                runs.append(engine.maintenance.run_dedup_scan(args.dedup, scope=args.scope, threshold=args.threshold))

            if args.cleanup_orphans:
                if verbose:
                    print("Cleaning up orphaned vectors...")
                runs.append(engine.maintenance.run_orphan_cleanup(dry_run=args.dry_run))

        if args.json:
            print(json.dumps({"runs": [run.to_dict() for run in runs]}, indent=2, default=str))
        else:
            for run in runs:
                if not args.quiet or run.failed:
                    print("-" * 60)
                    print(format_run(run))

        # Exit code 1 when any item failed, 2 when duplicates were flagged
        if any(run.failed for run in runs):
            return 1
        elif any(run.flagged_duplicates for run in runs):
            return 2
        return 0

    except (MaintenanceError, ValidationError) as e:
        print(f"ERROR: Maintenance operation failed: {e}")
        return 1
    except Exception as e:
        print(f"ERROR: Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
