#!/usr/bin/env python3
"""
SQL Server Dump Analyzer - Main Entry Point

Prints a text report for a SQL Server memory dump.
"""

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

from sqldump_analyzer import AnalyzerSettings, DumpSession, FormatError, generate_report
from sqldump_analyzer.config import split_paths
from sqldump_analyzer.core import REPORT_SECTIONS


def main(argv=None):
    # Load .env before settings are read (so SQLDUMP_SYMBOLS_PATH etc. are set)
    load_dotenv()

    parser = argparse.ArgumentParser(
        description='SQL Server Dump Analyzer - Diagnostic facts from SQL Server memory dumps',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full report
  %(prog)s SQLDump0001.mdmp

  # Only trace flags and environment, with symbol maps
  %(prog)s SQLDump0001.mdmp --symbols C:\\symbols --section traceflags --section environment

Symbol maps are <module>.symbols.json files. Directories can also be set
with SQLDUMP_SYMBOLS_PATH in the environment or a .env file.
        """
    )

    parser.add_argument(
        'dump_file',
        help='Path to the SQL Server dump file (.mdmp)'
    )

    parser.add_argument(
        '--symbols',
        action='append',
        metavar='PATH',
        help='Directory with symbol maps (repeatable, or %s separated)' % os.pathsep
    )

    parser.add_argument(
        '--section',
        action='append',
        choices=REPORT_SECTIONS,
        help='Report section to print (repeatable, default: all)'
    )

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    settings = AnalyzerSettings.from_env()
    if args.symbols:
        settings.symbols_path = [path for value in args.symbols for path in split_paths(value)]

    try:
        session = DumpSession.open(args.dump_file, settings=settings)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FormatError as e:
        print(f"Error: {args.dump_file} is not a valid minidump: {e}", file=sys.stderr)
        return 1

    with session:
        print(generate_report(session, args.section))
    return 0


if __name__ == "__main__":
    sys.exit(main())
