"""CLI interface for lead-firewall — JSON in on stdin, JSON out on stdout.

Usage:
    # Sanitize one text (stdin: plain text)
    echo 'call me at 555-123-4567' | python -m lead_firewall.cli sanitize-text

    # Sanitize notes / timeline (stdin: JSON array)
    echo '[{"id":"n1","text":"mail a@b.com","created_at":"2024-05-01"}]' | \
        python -m lead_firewall.cli sanitize-notes

    # Merge raw model output into the stored record for a lead
    python -m lead_firewall.cli merge --lead lead.json --save < model_output.txt

    # Inspect the store
    python -m lead_firewall.cli show --lead-id L1
    python -m lead_firewall.cli leads

Merge failures exit with status 2 and a message on stderr.
"""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .canonical import LeadFacts
from .config import build_policy, build_redactor_config, load_config, load_from_yaml
from .errors import LeadFirewallError, NormalizationError
from .firewall import sanitize_for_model, sanitize_notes, sanitize_timeline
from .merge import merge_canonical
from .redactor import Redactor
from .store_sqlite import SqliteCanonicalStore

DEFAULT_DB = os.environ.get(
    "LEAD_FIREWALL_DB",
    str(Path.home() / ".lead-firewall" / "records.db"),
)


def _load_cfg(args: argparse.Namespace) -> dict:
    cfg = load_from_yaml(args.config) if args.config else load_config({})
    if args.presidio:
        cfg["use_presidio"] = True
    if args.allow_list:
        cfg["allow_list"] = set(args.allow_list.split(","))
    return cfg


def _build_redactor(args: argparse.Namespace) -> Redactor:
    return Redactor(build_redactor_config(_load_cfg(args)))


def _dump(data: object) -> None:
    json.dump(data, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def cmd_sanitize_text(args: argparse.Namespace) -> None:
    """Sanitize plain text from stdin."""
    text, report = sanitize_for_model(sys.stdin.read(), redactor=_build_redactor(args))
    _dump({"text": text, "report": report.to_dict()})


def cmd_sanitize_notes(args: argparse.Namespace) -> None:
    """Sanitize a JSON array of notes from stdin."""
    fragments, report = sanitize_notes(json.loads(sys.stdin.read()), redactor=_build_redactor(args))
    _dump({"fragments": [f.to_dict() for f in fragments], "report": report.to_dict()})


def cmd_sanitize_timeline(args: argparse.Namespace) -> None:
    """Sanitize a JSON array of timeline events from stdin."""
    events, report = sanitize_timeline(json.loads(sys.stdin.read()), redactor=_build_redactor(args))
    _dump({"events": [e.to_dict() for e in events], "report": report.to_dict()})


def cmd_merge(args: argparse.Namespace) -> None:
    """Merge raw model output (stdin) with the lead's ground truth."""
    cfg = _load_cfg(args)
    with open(args.lead) as f:
        lead = LeadFacts.from_dict(json.load(f))
    store = SqliteCanonicalStore(db_path=args.db)
    try:
        record = merge_canonical(
            lead,
            sys.stdin.read(),
            store.get(lead.id),
            policy=build_policy(cfg),
        )
        if args.save:
            store.save(record)
    finally:
        store.close()
    _dump(record.to_dict())


def cmd_show(args: argparse.Namespace) -> None:
    """Print the stored record for a lead."""
    store = SqliteCanonicalStore(db_path=args.db)
    record = store.get(args.lead_id)
    store.close()
    if record is None:
        sys.stderr.write(f"No canonical record for lead {args.lead_id}\n")
        sys.exit(1)
    _dump(record.to_dict())


def cmd_leads(args: argparse.Namespace) -> None:
    """List lead ids with a stored record."""
    store = SqliteCanonicalStore(db_path=args.db)
    _dump(store.list_leads())
    store.close()


def cmd_clear(args: argparse.Namespace) -> None:
    """Delete the stored record for a lead."""
    store = SqliteCanonicalStore(db_path=args.db)
    deleted = store.delete(args.lead_id)
    store.close()
    sys.stderr.write(f"{'Deleted' if deleted else 'No record for'} lead {args.lead_id}\n")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="lead_firewall",
        description="AI data firewall and canonical lead-record merge",
    )
    parser.add_argument("--db", default=DEFAULT_DB, help="SQLite record store path")
    parser.add_argument("--config", default="", help="YAML config file")
    parser.add_argument("--presidio", action="store_true", help="Enable the Presidio layer")
    parser.add_argument("--allow-list", default="", help="Comma-separated values to never redact")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sanitize-text", help="Sanitize plain text (stdin)")
    sub.add_parser("sanitize-notes", help="Sanitize notes (JSON array on stdin)")
    sub.add_parser("sanitize-timeline", help="Sanitize timeline events (JSON array on stdin)")
    p_merge = sub.add_parser("merge", help="Merge model output (stdin) into a canonical record")
    p_merge.add_argument("--lead", required=True, help="JSON file with the lead's ground truth")
    p_merge.add_argument("--save", action="store_true", help="Persist the merged record")
    for name, text in (("show", "Show a stored record"), ("clear", "Delete a stored record")):
        p = sub.add_parser(name, help=text)
        p.add_argument("--lead-id", required=True)
    sub.add_parser("leads", help="List leads with a stored record")

    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    cmds = {
        "sanitize-text": cmd_sanitize_text,
        "sanitize-notes": cmd_sanitize_notes,
        "sanitize-timeline": cmd_sanitize_timeline,
        "merge": cmd_merge,
        "show": cmd_show,
        "leads": cmd_leads,
        "clear": cmd_clear,
    }
    try:
        cmds[args.command](args)
    except NormalizationError as e:
        sys.stderr.write(f"merge rejected: {e}\n")
        sys.exit(2)
    except LeadFirewallError as e:
        sys.stderr.write(f"error: {e}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
