import argparse
import logging
from pathlib import Path
import signal
import sys

from formbatch.config import Settings, get_settings
from formbatch.controller import SubmissionController
from formbatch.database import build_session_factory
from formbatch.driver import NavigationFailure
from formbatch.forms import resolve_layout
from formbatch.ingest import ingest_csv, render_sample_csv
from formbatch.run_store import RunLedger


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Submit a batch of records through a web form")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="start the HTTP control plane")

    run_parser = subparsers.add_parser("run", help="submit every record of a CSV file in the foreground")
    run_parser.add_argument("--csv", required=True, type=Path, help="CSV file with one record per row")
    run_parser.add_argument("--start-index", type=int, default=0, help="index of the first record to submit")

    sample_parser = subparsers.add_parser("sample-csv", help="write a sample CSV")
    sample_parser.add_argument("--output", type=Path, help="file to write instead of stdout")

    return parser.parse_args(argv)


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=handlers,
    )


def serve(settings: Settings) -> None:
    import uvicorn

    from formbatch.service import create_app

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


def run_csv(settings: Settings, csv_path: Path, start_index: int) -> int:
    ingested = ingest_csv(csv_path)
    if not ingested.records:
        print(f"no valid records in {csv_path} ({len(ingested.errors)} invalid rows)")
        return 1
    if not 0 <= start_index <= len(ingested.records):
        print(f"start index must be between 0 and {len(ingested.records)}")
        return 1

    from formbatch.browser import PlaywrightFormDriver

    layout = resolve_layout(settings)
    ledger = RunLedger(build_session_factory(settings.database_url), form_url=settings.form_url)
    controller = SubmissionController.from_settings(
        settings,
        PlaywrightFormDriver(settings, layout),
        layout,
        ledger=ledger,
    )

    def request_stop(signum, frame) -> None:
        logger.info("received signal %s, stopping after the current record", signum)
        controller.stop()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    try:
        result = controller.start(ingested.records, start_index)
    except NavigationFailure as exc:
        print(f"status=navigation_failed error={exc}")
        return 1

    status = controller.status()
    print(
        "status={status} total={total} index={index} successful={successful} failed={failed} retries={retries}".format(
            status=status.state.value,
            total=status.total,
            index=status.current_index,
            successful=len(result.successful),
            failed=len(result.failed),
            retries=result.retries,
        )
    )
    return 1 if result.failed else 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    if args.command == "serve":
        serve(settings)
        return

    if args.command == "sample-csv":
        content = render_sample_csv()
        if args.output:
            args.output.write_text(content, encoding="utf-8")
        else:
            sys.stdout.write(content)
        return

    exit_code = run_csv(settings, args.csv, args.start_index)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
