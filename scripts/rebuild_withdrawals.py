#!/usr/bin/env python3
"""
Rebuild withdrawals from the node wallet

Recovers withdrawals rows (and their ledger debits) for confirmed node sends
whose label or comment names the Telegram user. Used after a send succeeded
but recording it failed. Multi-output sends are booked as one withdrawal of
the summed legs; the network fee is stored alongside but not debited. Rows are
written with status "recovered"; txids already known are left alone.
"""

import argparse
import asyncio
import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

# Add the project root to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from database import SessionLocal, create_tables
from models import WithdrawalStatus
from services.chain_node_client import ChainNodeClient
from services.user_service import UserService
from services.withdrawal_service import WithdrawalRecorder
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import from_unix_timestamp
from utils.lites import lky_to_lites

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_HISTORY_COUNT = 100000

_LABEL_ID = re.compile(r"^\d+$")
_TAGGED_ID = re.compile(r"tg:?(\d{5,})", re.IGNORECASE)
_BARE_ID = re.compile(r"\b(\d{5,})\b")


def extract_telegram_id(entry: Any) -> Optional[int]:
    """Telegram id from a numeric label, else a tg:<id> comment, else a bare long number"""
    if not isinstance(entry, dict):
        return None
    label = str(entry.get("label") or "")
    if _LABEL_ID.match(label):
        return int(label)
    comment = str(entry.get("comment") or "")
    match = _TAGGED_ID.search(comment) or _BARE_ID.search(comment)
    return int(match.group(1)) if match else None


@dataclass
class RebuildStats:
    added: int = 0
    known: int = 0
    skipped: int = 0
    unknown_owner: int = 0
    failed: int = 0


@dataclass
class WalletSend:
    """All send legs of one wallet transaction"""

    txid: str
    address: str
    amount_lites: int
    fee_lites: Optional[int]
    confirmations: int
    timestamp: Optional[int]
    telegram_id: Optional[int]


def group_sends(entries: List[Any]) -> List[WalletSend]:
    """
    Collapse listtransactions send entries into one WalletSend per txid.

    A transaction paying several outputs shows one entry per output; their
    amounts add up to the withdrawal. The node repeats the transaction fee on
    every leg, so it is taken once.
    """
    sends: Dict[str, WalletSend] = {}
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("category") != "send":
            continue
        txid = entry.get("txid")
        if not txid:
            continue

        amount = lky_to_lites(abs(entry.get("amount") or 0))
        send = sends.get(txid)
        if send is None:
            fee = entry.get("fee")
            sends[txid] = WalletSend(
                txid=txid,
                address=entry.get("address") or "",
                amount_lites=amount,
                fee_lites=lky_to_lites(abs(fee)) if fee is not None else None,
                confirmations=int(entry.get("confirmations") or 0),
                timestamp=entry.get("blocktime") or entry.get("time"),
                telegram_id=extract_telegram_id(entry),
            )
            continue

        send.amount_lites += amount
        send.confirmations = max(send.confirmations, int(entry.get("confirmations") or 0))
        if send.telegram_id is None:
            send.telegram_id = extract_telegram_id(entry)
    return list(sends.values())


def record_recovered(telegram_id: int, send: WalletSend) -> bool:
    """Write the recovered row; False when the txid was already booked"""
    recorder = WithdrawalRecorder()
    users = UserService()
    with atomic_transaction(session_factory=SessionLocal) as session:
        user = users.ensure_user(session, telegram_id)
        posted = recorder.record(
            session,
            user.id,
            send.address,
            send.amount_lites,
            send.txid,
            timestamp=from_unix_timestamp(send.timestamp),
            status=WithdrawalStatus.RECOVERED,
            fee_lites=send.fee_lites,
        )
    return posted.created


async def rebuild_withdrawals(count: int, min_confirmations: int) -> RebuildStats:
    print("🔍 Rebuilding withdrawals from node wallet...")
    create_tables()
    stats = RebuildStats()

    async with ChainNodeClient() as node:
        entries = (await node.list_transactions(count=count)).unwrap()
        for send in group_sends(entries):
            txid = send.txid
            if send.confirmations < min_confirmations:
                stats.skipped += 1
                continue

            if send.telegram_id is None or send.fee_lites is None:
                detail = await node.get_transaction(txid)
                if detail.ok:
                    if send.fee_lites is None and detail.value.get("fee") is not None:
                        send.fee_lites = lky_to_lites(abs(detail.value["fee"]))
                    if send.telegram_id is None:
                        send.telegram_id = extract_telegram_id(detail.value)
                    for item in detail.value.get("details") or []:
                        if send.telegram_id is not None:
                            break
                        send.telegram_id = extract_telegram_id(item)
            if send.telegram_id is None:
                stats.unknown_owner += 1
                logger.warning(f"⚠️ skip send with no telegram id: {txid}")
                continue

            try:
                if await asyncio.to_thread(record_recovered, send.telegram_id, send):
                    stats.added += 1
                    logger.info(f"🩹 WITHDRAWAL_RECOVERED: {txid} tg={send.telegram_id} amount={send.amount_lites}")
                else:
                    stats.known += 1
            except Exception as e:
                stats.failed += 1
                logger.error(f"❌ failed withdrawal insert {txid}: {e}")

    print(
        f"Done. Added {stats.added}, known {stats.known}, skipped {stats.skipped}, "
        f"unknown_owner {stats.unknown_owner}, failed {stats.failed}."
    )
    return stats


def main():
    parser = argparse.ArgumentParser(description="Recover withdrawals from node wallet history")
    parser.add_argument("--count", type=int, default=DEFAULT_HISTORY_COUNT, help="Wallet entries to scan")
    parser.add_argument(
        "--min-confirmations",
        type=int,
        default=Config.MIN_CONFIRMATIONS,
        help="Minimum confirmations before recording",
    )
    args = parser.parse_args()

    stats = asyncio.run(rebuild_withdrawals(args.count, args.min_confirmations))
    sys.exit(1 if stats.failed else 0)


if __name__ == "__main__":
    main()
