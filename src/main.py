"""
Main CLI interface for the charging-station business Q&A system.

This module provides a command-line interface for planning and answering
natural-language questions about the business tables.
"""

import argparse
import json
import sys
import os
import logging
from datetime import date, datetime
from typing import Optional

# Add src to path for imports
sys.path.append(os.path.join(os.path.dirname(__file__)))

from utils.env_config import setup_logging

logger = logging.getLogger(__name__)


class ChargeQACLI:
    """Main CLI interface for the Q&A system."""

    def __init__(self, now: Optional[date] = None):
        self.now = now

    def _system(self, with_store: bool):
        from query import QuerySystem
        if with_store:
            return QuerySystem()
        # Planning never touches the store; a placeholder adapter keeps configuration out of it.
        from database_adapter import DatabaseAdapter
        return QuerySystem(adapter=DatabaseAdapter(':memory:'))

    def plan_question(self, question: str, as_json: bool = False) -> int:
        """Print the resolved plan and SQL without executing it."""
        qs = self._system(with_store=False)
        state = {'question': question}
        from errors import ChargeQAError
        try:
            prepared = qs.prepare(question, self.now, state)
        except ChargeQAError as e:
            print(json.dumps({'error': e.payload, 'state': state}, ensure_ascii=False, indent=2, default=str))
            return 1
        if prepared is None:
            print("General question: no data query needed")
            return 0
        if as_json:
            print(json.dumps({
                'method': prepared.method,
                'plan': prepared.plan.summary() if prepared.plan else None,
                'formula_params': prepared.plan.formula_params if prepared.plan else None,
                'sql': prepared.sql,
            }, ensure_ascii=False, indent=2, default=str))
            return 0
        print(f"Method: {prepared.method}")
        if prepared.plan is not None:
            for key, value in prepared.plan.summary().items():
                print(f"  {key}: {value}")
            if prepared.plan.formula_params:
                print(f"  params: {prepared.plan.formula_params}")
        print(f"\nSQL:\n{prepared.sql}")
        return 0

    def query_question(self, question: str, as_json: bool = False) -> int:
        """Run the full pipeline and print the answer."""
        qs = self._system(with_store=True)
        outcome = qs.plan_and_query(question, self.now)
        if as_json:
            print(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2, default=str))
        else:
            print(f"\nAnswer: {outcome.message}")
        return 1 if outcome.kind == 'error' else 0

    def list_catalog(self) -> int:
        """List sources with their time fields and validity windows."""
        from source_catalog import get_catalog
        catalog = get_catalog()
        print("\nSources:")
        print("-" * 72)
        for s in catalog.sources():
            time_field = s.time_field or f"{s.time_fields.year_field}/{s.time_fields.month_field}"
            window = ''
            if s.valid_from or s.valid_until:
                window = f" [{s.valid_from or '...'} ~ {s.valid_until or '...'}]"
            sites = f" sites={','.join(s.sites)}" if s.sites else ''
            print(f"{s.id:<12} {s.category:<10} time={time_field}{window}{sites}")
        counts = catalog.unit_counts
        print(f"\nInstalled {counts.unit} counts:")
        for site, by_year in counts.counts.items():
            print(f"  {site}: {dict(by_year)}")
        return 0


def _parse_now(value: str) -> date:
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Charging-station business Q&A - natural language to SQL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s plan "2024年四方坪充电电量是多少" --now 2026-01-15
  %(prog)s query "上个月车颜知己洗车收入"
  %(prog)s catalog
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Plan command
    plan_parser = subparsers.add_parser(
        'plan',
        help='Show the plan and SQL for a question without running it'
    )
    plan_parser.add_argument('question', help='Natural language question')
    plan_parser.add_argument(
        '--now',
        type=_parse_now,
        default=None,
        help='Resolve relative dates against this day (YYYY-MM-DD)'
    )
    plan_parser.add_argument('--json', action='store_true', help='Print JSON')

    # Query command
    query_parser = subparsers.add_parser(
        'query',
        help='Answer a question against the configured store'
    )
    query_parser.add_argument('question', help='Natural language question')
    query_parser.add_argument('--now', type=_parse_now, default=None,
                              help='Resolve relative dates against this day (YYYY-MM-DD)')
    query_parser.add_argument('--json', action='store_true', help='Print the full outcome as JSON')

    subparsers.add_parser(
        'catalog',
        help='List configured sources and validity windows'
    )

    return parser


def main():
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    setup_logging()
    cli = ChargeQACLI(now=getattr(args, 'now', None))

    try:
        if args.command == 'plan':
            sys.exit(cli.plan_question(args.question, as_json=args.json))

        elif args.command == 'query':
            sys.exit(cli.query_question(args.question, as_json=args.json))

        elif args.command == 'catalog':
            sys.exit(cli.list_catalog())

        else:
            parser.print_help()

    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
        sys.exit(1)


if __name__ == "__main__":
    main()
