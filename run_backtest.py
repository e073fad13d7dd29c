#!/usr/bin/env python3
"""
Run Backtest - CLI Entry Point

Backtest a time-based or indicator-based strategy document against
historical bars and write a markdown report.
"""

import argparse
import logging
import sys
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from strategy_backtester.backtest.backtest_engine import PERIODS, BacktestEngine
from strategy_backtester.backtest.report_generator import ReportGenerator
from strategy_backtester.config.loader import load_config, load_document
from strategy_backtester.database.backtest_models import BacktestDatabase
from strategy_backtester.instruments.instrument_resolver import InstrumentResolver
from strategy_backtester.strategy.strategy_validator import StrategyValidationError
from strategy_backtester.utils.logging_json import JSONLogger

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Backtest a multi-leg strategy on historical bars',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        '--config',
        type=str,
        default='config.yaml',
        help='Path to configuration file'
    )

    parser.add_argument(
        '--strategy',
        type=str,
        required=True,
        help='Path to strategy document (YAML or JSON)'
    )

    parser.add_argument(
        '--period',
        type=str,
        default='3m',
        choices=sorted(PERIODS),
        help='Backtest period, counted back from the end date'
    )

    parser.add_argument(
        '--initial-capital',
        type=float,
        default=None,
        help='Initial capital (config default when omitted)'
    )

    parser.add_argument(
        '--broker',
        type=str,
        default=None,
        help='Broker the strategy targets (config default when omitted)'
    )

    parser.add_argument(
        '--end-date',
        type=str,
        default=None,
        help='Last day of the backtest (YYYY-MM-DD). Defaults to today'
    )

    parser.add_argument(
        '--output',
        type=str,
        default='BACKTEST_REPORT.md',
        help='Output path for the report'
    )

    parser.add_argument(
        '--db-path',
        type=str,
        default=None,
        help='Path to backtest database (config value when omitted)'
    )

    parser.add_argument(
        '--no-report',
        action='store_true',
        help='Skip report generation (just run backtest)'
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Cannot load config: {e}")
        return 1

    logging.getLogger().setLevel(config.log_level)
    db_path = args.db_path or config.database_path

    logger.info("=" * 80)
    logger.info("STRATEGY BACKTEST")
    logger.info("=" * 80)
    logger.info(f"Config: {args.config}")
    logger.info(f"Strategy: {args.strategy}")
    logger.info(f"Period: {args.period} ending {args.end_date or 'today'}")
    logger.info(f"Database: {db_path}")
    logger.info(f"Report output: {args.output}")
    logger.info("=" * 80)

    try:
        strategy_document = load_document(args.strategy)
        resolver = InstrumentResolver.from_file(config.instruments_path)

        engine = BacktestEngine(
            config=config,
            resolver=resolver,
            database=BacktestDatabase(db_path),
            json_logger=JSONLogger(config.log_path),
        )

        run = engine.run_backtest(
            strategy_document,
            period=args.period,
            initial_capital=args.initial_capital,
            end_date=args.end_date,
            broker_id=args.broker,
        )

        logger.info("=" * 80)
        logger.info(f"Backtest completed successfully! Run ID: {run.run_id}")
        logger.info("=" * 80)

        if not args.no_report:
            logger.info("Generating report...")
            generator = ReportGenerator(engine.metrics_calculator)
            generator.generate_report(run, output_path=args.output)

            logger.info(f"Report generated: {args.output}")
            logger.info(f"Database: {db_path}")
            logger.info(f"Run ID: {run.run_id}")

        return 0

    except StrategyValidationError as e:
        logger.error("Strategy rejected:")
        for error in e.errors:
            logger.error(f"  - {error}")
        for leg_error in e.per_leg_errors:
            logger.error(f"  - {leg_error.message}")
        return 1

    except Exception as e:
        logger.error(f"Backtest failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
