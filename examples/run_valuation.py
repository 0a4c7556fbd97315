#!/usr/bin/env python3
"""
Example: Load, validate, and value an instrument definition.

Usage:
    python examples/run_valuation.py [instrument.json] [--spot SYM=PRICE] [--vol SYM=VOL]
                                     [--paths N] [--seed S] [--greeks] [--scenarios] [--verbose]
"""

from datetime import datetime
from pathlib import Path
import argparse
import logging
import sys
import traceback

from structpricer import (
    MarketSnapshot,
    MonteCarloConfig,
    ScenarioEngine,
    UnderlyingMarketData,
    ValuationEngine,
    ValuationOptions,
    load_instrument,
)


# Illustrative levels; pass --spot/--vol to override
DEFAULT_SPOTS = {"AAPL": 185.0, "MSFT": 380.0, "GOOGL": 140.0}
DEFAULT_VOLS = {"AAPL": 0.25, "MSFT": 0.22, "GOOGL": 0.28}
DEFAULT_CORRELATIONS = {"AAPL_MSFT": 0.6, "AAPL_GOOGL": 0.55, "GOOGL_MSFT": 0.6}


def parse_pairs(pairs, defaults):
    values = dict(defaults)
    for pair in pairs or []:
        symbol, _, value = pair.partition("=")
        values[symbol.upper()] = float(value)
    return values


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Value an instrument from a JSON definition")
    parser.add_argument(
        "instrument",
        type=str,
        nargs="?",
        default=str(Path(__file__).parent / "autocall_worstof_basket.json"),
        help="Path to JSON instrument definition"
    )
    parser.add_argument("--spot", action="append", help="Spot override, e.g. AAPL=190")
    parser.add_argument("--vol", action="append", help="Volatility override, e.g. AAPL=0.3")
    parser.add_argument("--rate", type=float, default=0.045, help="Risk-free rate")
    parser.add_argument("--as-of", type=str, default=None, help="Valuation date (YYYY-MM-DD)")
    parser.add_argument("--paths", "-n", type=int, default=50_000, help="Number of Monte Carlo paths")
    parser.add_argument("--seed", "-s", type=int, default=42, help="Random seed for reproducibility")
    parser.add_argument("--greeks", action="store_true", help="Compute Greeks")
    parser.add_argument("--scenarios", action="store_true", help="Print the price x vol P&L grid")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print detailed output")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    path = Path(args.instrument)

    print("=" * 70)
    print("STRUCTURED PRODUCTS PRICER")
    print("=" * 70)

    try:
        print(f"\n[1/3] Loading instrument: {path.name}")
        instrument = load_instrument(path)
        print(f"      Instrument ID: {instrument.instrument_id}")
        print(f"      Underlyings: {', '.join(instrument.underlying_symbols)}")
        print(f"      Notional: {instrument.currency} {instrument.notional:,.0f}")

        spots = parse_pairs(args.spot, DEFAULT_SPOTS)
        vols = parse_pairs(args.vol, DEFAULT_VOLS)
        as_of = datetime.fromisoformat(args.as_of) if args.as_of else datetime.combine(
            instrument.issue_date, datetime.min.time()
        )
        market = MarketSnapshot(
            as_of=as_of,
            underlyings={
                s: UnderlyingMarketData(symbol=s, spot=spots[s], volatility=vols[s])
                for s in instrument.underlying_symbols
            },
            risk_free_rate=args.rate,
            correlations=DEFAULT_CORRELATIONS,
        )

        print(f"\n[2/3] Valuing as of {market.valuation_date}...")
        options = ValuationOptions(
            include_greeks=args.greeks,
            mc=MonteCarloConfig(num_paths=args.paths, seed=args.seed),
        )
        engine = ValuationEngine()
        result = engine.valuate(instrument, market, options)

        print(f"\n[3/3] Results")
        print(f"      Model: {result.model.value}")
        print(f"      Value: {result.value:,.4f} ({result.unit_value:.4%} of notional)")
        if result.std_error:
            print(f"      Std error: {result.std_error:,.4f} (95% CI +/- {result.confidence_95:,.4f})")
        for status in result.barrier_statuses:
            print(
                f"      Barrier {status.barrier_id}: {status.state.value}, "
                f"{status.distance_pct:.2f}% away, P(breach) {status.breach_probability:.2%}"
            )
        for warning in result.warnings:
            print(f"      WARNING: {warning}")

        if result.greeks is not None:
            result.greeks.print_summary()

        if args.scenarios:
            ScenarioEngine(engine).run_grid(instrument, market, options).print_report()

        return 0

    except FileNotFoundError as e:
        print(f"\nERROR: {e}")
        return 1

    except Exception as e:
        print(f"\nERROR: {type(e).__name__}: {e}")
        if args.verbose:
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
