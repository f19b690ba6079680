#!/usr/bin/env python3
# Bountyline CLI v1.0.0
# argparse. Operator commands: serve, sweep, wallets, reputation, arbitration.

import argparse
import json
import os
import sys
from datetime import datetime

from escrow import get_escrow_service
from identity import Caller
from listings import ParticipantRegistry
from rails import LedgerRail, get_funds_rail
from reputation import TIER_INFO, ReputationTier, get_reputation_engine
from scheduler import get_scheduler, run_forever, setup_logging


def _ts(value):
    if not value:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _money(minor_units, currency="USD"):
    return f"{minor_units / 100:,.2f} {currency}"


def _ledger() -> LedgerRail:
    rail = get_funds_rail()
    return getattr(rail, "ledger", rail)


def cmd_serve(args):
    """Run the HTTP API (and the sweeper thread unless --no-sweeper)."""
    import uvicorn

    from api import app

    setup_logging()
    if not args.no_sweeper:
        get_scheduler().start()
    uvicorn.run(app, host=args.host, port=args.port)


def cmd_sweep(args):
    """One dispute-window sweep, then exit."""
    setup_logging()
    summary = get_scheduler().sweep()
    if args.json:
        print(json.dumps(summary, indent=2))
        return
    print(f"Auto-released: {len(summary['auto_released'])}")
    for tx_id in summary["auto_released"]:
        print(f"  {tx_id}")
    if summary["release_failed"]:
        print(f"Release failed (retry next sweep): {', '.join(summary['release_failed'])}")
    print(f"Funded: {len(summary['funded'])} | funding deferred: {summary['funding_deferred']}")
    print(f"Reputation entries refreshed: {summary['reputation_refreshed']}")


def cmd_sweeper(args):
    """Foreground sweeper loop. Ctrl-C to stop."""
    print("Dispute-window sweeper running. Ctrl-C to stop.")
    run_forever()


def cmd_register(args):
    participant, api_key = ParticipantRegistry().register(
        args.name, kind=args.kind, wallet_ref=args.wallet or "",
    )
    print(f"Registered: {participant.participant_id} | {participant.display_name} ({participant.kind})")
    print(f"API key (shown once): {api_key}")


def cmd_deposit(args):
    result = _ledger().deposit(args.account, args.amount, description=args.note)
    print(f"Deposited {_money(args.amount)} to {args.account} | balance {_money(result['balance'])}")


def cmd_balance(args):
    wallet = _ledger().balance(args.account)
    print(f"Wallet: {args.account}")
    print(f"  Balance:          {_money(wallet['balance'])}")
    print(f"  Held in escrow:   {_money(wallet['held_in_escrow'])}")
    print(f"  Total deposited:  {_money(wallet['total_deposited'])}")
    print(f"  Total earned:     {_money(wallet['total_earned'])}")
    print(f"  Total refunded:   {_money(wallet['total_refunded'])}")


def cmd_reputation(args):
    engine = get_reputation_engine()
    score = engine.recompute(args.agent_id) if args.refresh else engine.score(args.agent_id)
    if args.json:
        print(json.dumps(score.to_dict(), indent=2))
        return
    info = TIER_INFO[ReputationTier(score.tier)]
    print(f"Agent: {score.agent_id}")
    print(f"  Score:         {score.score:.2f} / 5.00")
    print(f"  Tier:          {score.tier} ({info['label']})")
    print(f"  Dispute window: {engine.dispute_window_for(args.agent_id):g}h")
    print(f"  Transactions:  {score.transaction_count} "
          f"(released {score.released_count}, disputed {score.disputed_count}, "
          f"refunded {score.refunded_count})")
    print(f"  Volume:        ${score.total_volume_usd:,.2f}")
    print(f"  Avg completion: {score.avg_completion_time_hours:.1f}h")
    print(f"  Calculated:    {_ts(score.calculated_at)}")


def cmd_leaderboard(args):
    board = get_reputation_engine().get_leaderboard(args.limit)
    if not board:
        print("No scored agents yet.")
        return
    for i, row in enumerate(board, 1):
        print(f"  {i:>3}. {row['agent_id']} | {row['score']:.2f} | {row['tier']} "
              f"| {row['transaction_count']} txs")


def cmd_transaction(args):
    tx = get_escrow_service().get_transaction(args.transaction_id)
    if args.json:
        print(json.dumps(tx, indent=2, default=str))
        return
    print(f"Transaction: {tx['transaction_id']}")
    print(f"  State:    {tx['state']}")
    print(f"  Listing:  {tx['listing_id']}")
    print(f"  Buyer:    {tx['buyer_id']}")
    print(f"  Seller:   {tx['seller_id']}")
    print(f"  Amount:   {_money(tx['amount'], tx['currency'])}")
    print(f"  Window:   {tx['dispute_window_hours']:g}h")
    print(f"  Created:  {_ts(tx['created_at'])}")
    print(f"  Delivered: {_ts(tx['delivered_at'])}")
    if tx["dispute_window_remaining_minutes"] is not None:
        print(f"  Dispute window closes in {tx['dispute_window_remaining_minutes']} min")
    print(f"  Completed: {_ts(tx['completed_at'])}")


def cmd_timeline(args):
    for evt in get_escrow_service().timeline(args.transaction_id):
        print(f"  {_ts(evt['timestamp'])} | {evt['label']:<36} | {evt['actor']}")


def cmd_resolve(args):
    caller = Caller(participant_id=args.arbitrator, is_admin=True)
    tx = get_escrow_service().resolve_dispute(
        args.transaction_id, caller, release_to_seller=(args.outcome == "release"),
        note=args.note,
    )
    print(f"Resolved {tx['transaction_id']}: {tx['state']}")


def cmd_verify_chain(args):
    result = get_escrow_service().verify_chain(args.transaction_id)
    status = "VALID" if result["valid"] else "BROKEN"
    print(f"Chain {status} | {result['events_checked']} events checked")
    if not result["valid"]:
        print(f"  Broken at {result['broken_at']}: {result.get('reason')}")
        sys.exit(1)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="bountyline",
        description="Bountyline escrow marketplace",
    )
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=int(os.environ.get("BOUNTYLINE_PORT", "9600")))
    p_serve.add_argument("--no-sweeper", action="store_true", help="Do not start the sweeper thread")
    p_serve.set_defaults(func=cmd_serve)

    p_sweep = sub.add_parser("sweep", help="Run one dispute-window sweep")
    p_sweep.add_argument("--json", action="store_true")
    p_sweep.set_defaults(func=cmd_sweep)

    p_sweeper = sub.add_parser("sweeper", help="Run the sweeper loop in the foreground")
    p_sweeper.set_defaults(func=cmd_sweeper)

    p_reg = sub.add_parser("register", help="Register a participant")
    p_reg.add_argument("--name", required=True, help="Display name")
    p_reg.add_argument("--kind", choices=["agent", "human"], default="agent")
    p_reg.add_argument("--wallet", default=None, help="Payout account (acct_... for Stripe)")
    p_reg.set_defaults(func=cmd_register)

    p_dep = sub.add_parser("deposit", help="Credit a ledger wallet")
    p_dep.add_argument("account", help="Participant ID")
    p_dep.add_argument("amount", type=int, help="Amount in minor units (cents)")
    p_dep.add_argument("--note", default="Deposit")
    p_dep.set_defaults(func=cmd_deposit)

    p_bal = sub.add_parser("balance", help="Show a ledger wallet")
    p_bal.add_argument("account", help="Participant ID (or 'platform')")
    p_bal.set_defaults(func=cmd_balance)

    p_rep = sub.add_parser("reputation", help="Show an agent's reputation")
    p_rep.add_argument("agent_id")
    p_rep.add_argument("--refresh", action="store_true", help="Recompute before showing")
    p_rep.add_argument("--json", action="store_true")
    p_rep.set_defaults(func=cmd_reputation)

    p_lb = sub.add_parser("leaderboard", help="Top agents by score")
    p_lb.add_argument("--limit", type=int, default=20)
    p_lb.set_defaults(func=cmd_leaderboard)

    p_tx = sub.add_parser("transaction", help="Show a transaction")
    p_tx.add_argument("transaction_id")
    p_tx.add_argument("--json", action="store_true")
    p_tx.set_defaults(func=cmd_transaction)

    p_tl = sub.add_parser("timeline", help="Show a transaction's event timeline")
    p_tl.add_argument("transaction_id")
    p_tl.set_defaults(func=cmd_timeline)

    p_res = sub.add_parser("resolve", help="Resolve a disputed transaction")
    p_res.add_argument("transaction_id")
    p_res.add_argument("outcome", choices=["release", "refund"])
    p_res.add_argument("--note", default="")
    p_res.add_argument("--arbitrator", default="cli")
    p_res.set_defaults(func=cmd_resolve)

    p_vc = sub.add_parser("verify-chain", help="Verify a transaction's event hash chain")
    p_vc.add_argument("transaction_id")
    p_vc.set_defaults(func=cmd_verify_chain)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()
