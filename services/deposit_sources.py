"""
Deposit sources

The reconciler reads candidate outputs from exactly one source: the node's
recent-transaction list or the explorer's per-address history. Both are
adapted here to the same ChainOutput shape.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import DepositSourceKind, WatchedAddress
from services.chain_node_client import ChainNodeClient
from services.chain_results import CallResult
from services.explorer_client import ExplorerClient
from utils.datetime_helpers import from_unix_timestamp
from utils.lites import LiteAmountError, lky_to_lites

logger = logging.getLogger(__name__)

_NUMERIC_LABEL = re.compile(r"^\d+$")


@dataclass(frozen=True)
class ChainOutput:
    """One receiving output as seen by a deposit source"""
    txid: str
    vout: int
    address: Optional[str]
    amount_lites: int
    confirmations: int
    timestamp: Optional[datetime] = None
    label: Optional[str] = None
    user_id: Optional[int] = None  # Known owner, when the source is address-scoped

    @property
    def reference(self) -> str:
        return f"{self.txid}:{self.vout}"

    @property
    def telegram_id(self) -> Optional[int]:
        if self.label and _NUMERIC_LABEL.match(str(self.label)):
            return int(self.label)
        return None


def explorer_confirmations(tip_height: int, block_height: Optional[int]) -> int:
    """Blocks on top of the containing block, counting the block itself"""
    if not block_height:
        return 0
    return max(0, int(tip_height) - int(block_height) + 1)


def node_outputs_from_listing(entries: List[dict]) -> List[ChainOutput]:
    """Keep 'receive' entries and convert node amounts to lites"""
    outputs = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("category") != "receive":
            continue
        try:
            amount_lites = lky_to_lites(entry.get("amount", 0))
        except LiteAmountError as e:
            logger.warning(f"⚠️ NODE_BAD_AMOUNT: {entry.get('txid')} - {e}")
            continue
        if amount_lites <= 0 or not entry.get("txid"):
            continue
        outputs.append(
            ChainOutput(
                txid=str(entry["txid"]),
                vout=int(entry.get("vout", 0)),
                address=entry.get("address"),
                amount_lites=amount_lites,
                confirmations=int(entry.get("confirmations") or 0),
                timestamp=from_unix_timestamp(entry.get("blocktime") or entry.get("time")),
                label=str(entry["label"]) if entry.get("label") is not None else None,
            )
        )
    return outputs


def explorer_outputs_for_address(
    address: str, user_id: int, transactions: List[dict], tip_height: int
) -> List[ChainOutput]:
    """Confirmed outputs of the explorer history that pay `address`"""
    outputs = []
    for tx in transactions:
        status = tx.get("status") or {}
        if not status.get("confirmed"):
            continue
        confirmations = explorer_confirmations(tip_height, status.get("block_height"))
        for index, out in enumerate(tx.get("vout") or []):
            if out.get("scriptpubkey_address") != address:
                continue
            value = int(out.get("value") or 0)
            if value <= 0:
                continue
            outputs.append(
                ChainOutput(
                    txid=str(tx["txid"]),
                    vout=index,
                    address=address,
                    amount_lites=value,
                    confirmations=confirmations,
                    timestamp=from_unix_timestamp(status.get("block_time")),
                    user_id=user_id,
                )
            )
    return outputs


class NodeDepositSource:
    """Candidates from the node's listtransactions"""

    kind = DepositSourceKind.NODE.value

    def __init__(self, client: ChainNodeClient, count: Optional[int] = None):
        self.client = client
        self.count = count

    async def fetch_outputs(self) -> List[ChainOutput]:
        result = await self.client.list_transactions(count=self.count)
        return node_outputs_from_listing(result.unwrap())

    async def is_wallet_change(self, txid: str) -> bool:
        """
        True when the wallet also spent in this transaction.

        A receive leg inside one of our own sends is change, not a deposit.
        Raises ChainError when the detail lookup fails, so the output is retried
        next cycle instead of being credited blind.
        """
        detail = (await self.client.get_transaction(txid)).unwrap()
        details = detail.get("details")
        if isinstance(details, list):
            return any(isinstance(d, dict) and d.get("category") == "send" for d in details)
        return False


class ExplorerDepositSource:
    """Candidates from the explorer's history of every watched address"""

    kind = DepositSourceKind.EXPLORER.value

    def __init__(self, client: ExplorerClient, session_factory: Callable[[], Session]):
        self.client = client
        self.session_factory = session_factory

    def _watched_addresses(self) -> Dict[str, int]:
        session = self.session_factory()
        try:
            rows = session.execute(select(WatchedAddress.address, WatchedAddress.user_id)).all()
        finally:
            session.close()
        return {address: user_id for address, user_id in rows}

    async def fetch_outputs(self) -> List[ChainOutput]:
        watched = await asyncio.to_thread(self._watched_addresses)
        if not watched:
            return []

        tip_height = (await self.client.tip_height()).unwrap()
        outputs: List[ChainOutput] = []
        for address, user_id in watched.items():
            result: CallResult = await self.client.address_transactions(address)
            if not result.ok:
                # One bad address must not hide the others
                logger.warning(f"⚠️ EXPLORER_ADDRESS_SKIPPED: {address} - {result.error}")
                continue
            outputs.extend(explorer_outputs_for_address(address, user_id, result.value, tip_height))
        return outputs

    async def is_wallet_change(self, txid: str) -> bool:
        # Address-scoped outputs: change never pays a watched deposit address
        return False
