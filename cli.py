#!/usr/bin/env python3
"""Simple CLI for trying the swap/bridge orchestration core against LI.FI"""

import argparse
import asyncio
import json
from typing import Optional

from zestswap.container import build_services
from zestswap.core.quotes.models import ComparisonOptions, QuoteRequest, QuoteResponse
from zestswap.logging_config import setup_logging


def _format_amount(raw: str, decimals: int) -> str:
    try:
        return f"{int(raw) / 10 ** decimals:,.6f}"
    except (TypeError, ValueError):
        return raw


def print_quote(quote: QuoteResponse) -> None:
    """Pretty print a quote"""
    action = quote.action
    estimate = quote.estimate
    print(f"\n💱 Quote {quote.id}")
    print("=" * 50)
    print(f"Type: {quote.type.value}")
    print(f"Tool: {quote.tool}")
    if action and estimate:
        print(
            f"From: {_format_amount(action.from_amount, action.from_token.decimals)} "
            f"{action.from_token.symbol} on chain {action.from_chain_id}"
        )
        print(
            f"To:   {_format_amount(estimate.to_amount, action.to_token.decimals)} "
            f"{action.to_token.symbol} on chain {action.to_chain_id}"
        )
        print(f"Min received: {_format_amount(estimate.to_amount_min, action.to_token.decimals)}")
        print(f"Slippage: {(action.slippage or 0) * 100:.2f}%")
    print(f"Gas cost: ${quote.gas_cost_usd:,.2f} USD")
    print(f"Estimated time: {quote.execution_duration:.0f}s")
    if quote.tags:
        print(f"Tags: {', '.join(quote.tags)}")


def _quote_request(args: argparse.Namespace) -> QuoteRequest:
    return QuoteRequest(
        from_chain=args.from_chain,
        to_chain=args.to_chain,
        from_token=args.from_token,
        to_token=args.to_token,
        from_amount=args.amount,
        from_address=args.address,
        slippage=args.slippage,
    )


async def cli_quote(args: argparse.Namespace) -> None:
    """CLI command to fetch a single quote"""
    services = build_services()
    print(f"🔍 Fetching quote {args.from_token}@{args.from_chain} -> {args.to_token}@{args.to_chain}...")
    try:
        quote = await services.quote_manager.get_quote(_quote_request(args))
        if args.json:
            print(quote.model_dump_json(by_alias=True, indent=2))
        else:
            print_quote(quote)
    except Exception as e:
        print(f"❌ Error: {e}")
    finally:
        await services.stop()


async def cli_compare(args: argparse.Namespace) -> None:
    """CLI command to compare routes across tools"""
    services = build_services()
    print(f"🔍 Comparing up to {args.max_quotes} routes...")
    try:
        comparison = await services.quote_manager.get_quote_comparison(
            _quote_request(args),
            ComparisonOptions(max_quotes=args.max_quotes),
        )
        print(f"\n📊 {comparison.metrics.total_quotes} route(s)")
        print("-" * 50)
        for i, quote in enumerate(comparison.quotes, 1):
            marker = "⭐" if quote.id == comparison.best_quote.id else "  "
            to_amount = quote.estimate.to_amount if quote.estimate else "?"
            print(f"{marker}{i:2d}. {quote.tool:<16} out={to_amount:>24} time={quote.execution_duration:>6.0f}s gas=${quote.gas_cost_usd:,.2f}")
        print(f"\nFastest: {comparison.by_speed.tool}")
        print(f"Cheapest: {comparison.by_cost.tool}")
        print(f"Most reliable: {comparison.by_reliability.tool}")
    except Exception as e:
        print(f"❌ Error: {e}")
    finally:
        await services.stop()


async def cli_gas(chain_id: int) -> None:
    """CLI command to show gas tiers for a chain"""
    services = build_services()
    try:
        optimization = await services.tx_builder.optimize_gas_price(chain_id)
        source = "fallback" if optimization.is_fallback else "live"
        print(f"\n⛽ Gas on chain {chain_id} ({source}, congestion {optimization.current.network_congestion})")
        print("-" * 50)
        for name in ("slow", "recommended", "fast"):
            tier = getattr(optimization, name)
            print(
                f"{name:<12} max fee {tier.max_fee_per_gas / 1e9:>10.3f} gwei  "
                f"priority {tier.max_priority_fee_per_gas / 1e9:>8.3f} gwei  ~{tier.estimated_time}s"
            )
    except Exception as e:
        print(f"❌ Error: {e}")
    finally:
        await services.stop()


async def cli_status(tx_hash: str, bridge: Optional[str] = None) -> None:
    """CLI command to check a transfer's status"""
    services = build_services()
    try:
        status = await services.rate_limiter.execute(lambda: services.aggregator.get_status(tx_hash, bridge))
        print(json.dumps(status.model_dump(by_alias=True, exclude_none=True), indent=2))
    except Exception as e:
        print(f"❌ Error: {e}")
    finally:
        await services.stop()


def _add_route_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("from_chain", type=int, help="Source chain id")
    parser.add_argument("to_chain", type=int, help="Destination chain id")
    parser.add_argument("from_token", help="Source token address or symbol")
    parser.add_argument("to_token", help="Destination token address or symbol")
    parser.add_argument("amount", help="Amount in the token's smallest unit")
    parser.add_argument("address", help="Sender address")
    parser.add_argument("--slippage", type=float, help="Slippage tolerance (0.005 = 0.5%%)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="zestswap CLI")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command")

    quote_parser = subparsers.add_parser("quote", help="Fetch a quote")
    _add_route_args(quote_parser)
    quote_parser.add_argument("--json", action="store_true", help="Print the raw quote JSON")

    compare_parser = subparsers.add_parser("compare", help="Compare routes across tools")
    _add_route_args(compare_parser)
    compare_parser.add_argument("--max-quotes", type=int, default=5, help="Maximum routes to compare")

    gas_parser = subparsers.add_parser("gas", help="Show gas tiers for a chain")
    gas_parser.add_argument("chain_id", type=int, help="Chain id")

    status_parser = subparsers.add_parser("status", help="Check a transfer's status")
    status_parser.add_argument("tx_hash", help="Source transaction hash")
    status_parser.add_argument("--bridge", help="Bridge used, if known")

    return parser


async def main():
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    setup_logging(args.log_level)
    command = args.command.lower()

    if command == "quote":
        await cli_quote(args)

    elif command == "compare":
        if args.max_quotes <= 0:
            raise ValueError("max-quotes must be positive")
        await cli_compare(args)

    elif command == "gas":
        await cli_gas(args.chain_id)

    elif command == "status":
        await cli_status(args.tx_hash, args.bridge)

    else:
        print(f"❌ Unknown command: {command}")
        parser.print_help()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
