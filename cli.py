"""
Collect and reconcile one day of race predictions.

Usage:
    python cli.py --date 20250525 --analytics-dir dumps/netkeiba --marks-dir dumps/winkeiba
    python cli.py --date 20250525 --images images/note --send
    python cli.py --date 20250525 --track-codes 05 08 --predictions-dir dumps/umax --resume

Each source is optional; the ones given run in order (analytics, marks,
third-party predictions, results, mark images, index images) against one
shared store. The day aggregate (JSON + CSV) is written at the end.

Exit status is 1 if a work set could not be obtained (missing dump
directory, unreadable listing) or the configuration is invalid.
"""

import argparse
import sys
from pathlib import Path

from core.config import Settings
from core.collectors import (
    JsonDumpCollector,
    collect_analytics,
    collect_marks,
    collect_third_party,
    collect_results,
    collect_ai_marks,
    collect_index_images,
    images_in,
)
from core.orchestrator import AcquisitionError, CollectionRun, PacingPolicy
from core.reporting import to_predictions_request
from core.results import RunSummary
from core.schedule import track_codes_from_schedule
from core.store import EntityStore, RecordRepository
from core.tracks import normalize_date, normalize_track_code
from core.logging import LogContext, run_logger, set_verbose


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collect and reconcile race predictions for one day")
    parser.add_argument("--date", required=True, help="Race date (YYYYMMDD, YYYY-MM-DD or 2025年5月25日)")
    parser.add_argument("--track-codes", nargs="+", help="Venue codes (default: from the schedule file)")
    parser.add_argument("--analytics-dir", type=Path, help="Race dumps from the analytics site")
    parser.add_argument("--marks-dir", type=Path, help="Race dumps from the marks site")
    parser.add_argument("--predictions-dir", type=Path, help="Third-party prediction dumps")
    parser.add_argument("--results-dir", type=Path, help="Settled result dumps")
    parser.add_argument("--images", type=Path, help="Directory of prediction images to read")
    parser.add_argument("--index-images", type=Path, help="Directory of newspaper index-table images to read")
    parser.add_argument("--data-dir", type=Path, help="Output directory (default: DATA_DIR or ./data)")
    parser.add_argument("--resume", action="store_true", help="Load records saved by an earlier run first")
    parser.add_argument("--send", action="store_true", help="Post predictions to the reporting API")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def resolve_track_codes(args: argparse.Namespace, settings: Settings, date: str) -> list[str]:
    if args.track_codes:
        codes = [normalize_track_code(c) for c in args.track_codes]
        unknown = [c for c, n in zip(args.track_codes, codes) if n is None]
        if unknown:
            raise ValueError(f"Unknown track codes: {', '.join(unknown)}")
        return codes
    return track_codes_from_schedule(settings.schedule_file, date)


def collect_day(args: argparse.Namespace, settings: Settings, store: EntityStore, date: str) -> list[RunSummary]:
    """
    Run every requested source against the store.

    Raises:
        AcquisitionError: If any source's work set cannot be obtained
    """
    pacing = PacingPolicy.from_settings(settings)
    summaries = []

    needs_tracks = args.analytics_dir or args.marks_dir
    track_codes = resolve_track_codes(args, settings, date) if needs_tracks else []
    if needs_tracks and not track_codes:
        raise AcquisitionError(f"No venues for {date}; pass --track-codes or set SCHEDULE_FILE")

    if args.analytics_dir:
        collector = JsonDumpCollector(args.analytics_dir, name="netkeiba")
        summaries.append(collect_analytics(
            store, collector, date, track_codes, run=CollectionRun("netkeiba", pacing),
        ))

    if args.marks_dir:
        collector = JsonDumpCollector(args.marks_dir, name="winkeiba")
        summaries.append(collect_marks(
            store, collector, date, track_codes, run=CollectionRun("winkeiba", pacing),
        ))

    if args.predictions_dir:
        collector = JsonDumpCollector(args.predictions_dir, name="umax")
        summaries.append(collect_third_party(store, collector, date, run=CollectionRun("umax", pacing)))

    if args.results_dir:
        collector = JsonDumpCollector(args.results_dir, name="results")
        summaries.append(collect_results(store, collector, date, run=CollectionRun("results", pacing)))

    if args.images or args.index_images:
        from api.vision import VisionAPI

        vision = VisionAPI(api_key=settings.anthropic_api_key, model=settings.vision_model)

        if args.images:
            summaries.append(collect_ai_marks(
                store,
                vision,
                images_in(args.images),
                run=CollectionRun("note-ai", pacing),
                review_threshold=settings.ocr_review_threshold,
            ))

        if args.index_images:
            summaries.append(collect_index_images(
                store,
                vision,
                images_in(args.index_images),
                run=CollectionRun("index-ocr", pacing),
            ))

    return summaries


def day_summary(date: str, summaries: list[RunSummary]) -> RunSummary:
    """Combine every source's run into one summary for the day."""
    day = RunSummary(run=date)
    for summary in summaries:
        day = day.merge(summary)
    return day


def send_predictions(store: EntityStore, settings: Settings, date: str) -> int:
    """Post one payload per venue. Returns the number of venues that failed."""
    from api.reporting import ReportingAPI, APIError

    api = ReportingAPI(base_url=settings.reporting_api_url, api_key=settings.reporting_api_key)
    failures = 0
    for code in sorted({r.key.track_code for r in store.records(date)}):
        payload = to_predictions_request(date, code, store.records(date))
        try:
            api.send_predictions(payload)
        except APIError as e:
            run_logger.error(f"Sending {date}/{code} failed: {e.message}", extra={"status_code": e.status_code})
            failures += 1
    return failures


def main(argv=None) -> int:
    args = parse_args(argv)
    set_verbose(args.verbose)

    date = normalize_date(args.date)
    if not date:
        print(f"Invalid date: {args.date}")
        return 1

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 1
    if args.data_dir:
        settings.data_dir = args.data_dir

    store = EntityStore(repository=RecordRepository(settings.data_dir))

    with LogContext(run_logger, run_date=date):
        if args.resume:
            store.load_day(date)

        try:
            summaries = collect_day(args, settings, store, date)
        except (AcquisitionError, ValueError) as e:
            run_logger.error(f"Run aborted: {e}")
            return 1

        for summary in summaries:
            print(summary.summary())
            for result in summary.skipped:
                print(f"  {result.unit}: {result.status.value} - {result.message}")
        if len(summaries) > 1:
            print(day_summary(date, summaries).summary())

        paths = store.save_day(date)
        if paths:
            print(f"Saved {len(store.records(date))} races to {paths[0]} and {paths[1]}")

        if args.send:
            try:
                failures = send_predictions(store, settings, date)
            except ValueError as e:
                run_logger.error(f"Run aborted: {e}")
                return 1
            if failures:
                return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
