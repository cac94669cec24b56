import argparse
import logging
from pathlib import Path

from engagement_model import EngagementModel, normalize_responses
from notifier import Dispatcher, outcomes_frame
from outreach import build_remind_queue, build_status_table
from survey_settings import load_settings
from survey_source import SurveyClient, extract_contacts, load_results_csv, records_frame

log = logging.getLogger("weekly_reminders")


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Classify weekly survey engagement and send reminders.")
    ap.add_argument("--start-csv", help="Enrollment survey export (instead of the results API)")
    ap.add_argument("--weekly-csv", help="Weekly survey export (instead of the results API)")
    ap.add_argument("--out", default=".", help="Directory for status_table.csv / remind_queue.csv")
    ap.add_argument("--workers", type=int, default=None, help="Classify sessions on N threads")
    ap.add_argument("--dry-run", action="store_true", help="Build the tables but send nothing")
    args = ap.parse_args(argv)
    if bool(args.start_csv) != bool(args.weekly_csv):
        ap.error("--start-csv and --weekly-csv go together")
    return args


def main(argv=None, settings=None, dispatcher=None) -> int:
    args = parse_args(argv)
    settings = settings or load_settings()

    # Load both instruments
    if args.start_csv:
        start_rows = load_results_csv(args.start_csv)
        weekly_rows = load_results_csv(args.weekly_csv)
    else:
        client = SurveyClient(settings)
        start_rows = client.fetch_results(settings.survey_start_id)
        weekly_rows = client.fetch_results(settings.survey_weekly_id)

    contacts = extract_contacts(start_rows, settings)
    weekly = normalize_responses(records_frame(weekly_rows, settings))

    model = EngagementModel(workers=args.workers)
    classified = model.classify(weekly)
    status = build_status_table(classified, contacts, weekly)
    queue = build_remind_queue(status)

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    status.to_csv(out / "status_table.csv", index=False)
    queue.to_csv(out / "remind_queue.csv", index=False)
    log.info("Wrote %d status rows, %d reminders queued → %s", len(status), len(queue), out)

    if args.dry_run:
        log.info("Dry run: no emails sent")
        return 0

    dispatcher = dispatcher or Dispatcher(settings)
    outcomes = dispatcher.dispatch_all(queue)
    outcomes_frame(outcomes).to_csv(out / "dispatch_report.csv", index=False)
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    raise SystemExit(main())
