# solana_sniper_bundle/sniper/payments.py
"""
Inbound SOL payment reconciliation.

A webhook delivers one transaction or a list of them. Nothing in the payload
is trusted: every signature is re-fetched from RPC, checked for on-chain
errors and confirmation depth, and its memo
(``<PREFIX>-<userId>-<packId>-<nonce>``) and received amount are validated
against the credit pack before credits are added.

Processing is idempotent on signature. Every rejection writes a ``failed``
ledger row with a reason and moves on to the next item.
"""
from __future__ import annotations

import hmac
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union

import aiohttp

from solana_sniper_bundle.common.constants import LAMPORTS_PER_SOL
from solana_sniper_bundle.sniper import database
from solana_sniper_bundle.sniper.utils_exec import _to_int, resolve_db_path, section

logger = logging.getLogger("TradingBot")

MEMO_PROGRAM_IDS = (
    "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
    "Memo1UhkJBfCR6MNhJBZNZCECLGmpvHqWcErECDMmsR",
)
MEMO_LOG_RE = re.compile(r'Memo.*?:\s*"(.+?)"')
PRICE_TOLERANCE = 0.99  # network fees
RPC_TIMEOUT_S = 15


class PaymentConfigError(RuntimeError):
    pass


class PaymentRejected(Exception):
    """One item failed verification; ``reason`` goes to the ledger."""

    def __init__(self, reason: str, **context: Any):
        super().__init__(reason)
        self.reason = reason
        self.context = context


def memo_pattern(prefix: str = "AMS") -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(prefix)}-([a-f0-9-]{{36}})-([a-f0-9-]{{36}})-(\d+)$")


def parse_memo(memo: str, prefix: str = "AMS") -> Optional[Tuple[str, str, int]]:
    """Return ``(user_id, pack_id, nonce)`` or None when the memo is malformed."""
    m = memo_pattern(prefix).match((memo or "").strip())
    if not m:
        return None
    return m.group(1), m.group(2), int(m.group(3))


def _key_str(key: Any) -> Optional[str]:
    if isinstance(key, str):
        return key
    if isinstance(key, dict):
        return key.get("pubkey")
    return None


def extract_memo(tx: Dict[str, Any]) -> str:
    """Memo program instruction wins; fall back to the ``Memo (len N): "..."`` log line."""
    message = (tx.get("transaction") or {}).get("message") or {}
    for ix in message.get("instructions") or []:
        if ix.get("programId") in MEMO_PROGRAM_IDS:
            value = ix.get("parsed") or ix.get("data") or ""
            if isinstance(value, str):
                return value
    for line in (tx.get("meta") or {}).get("logMessages") or []:
        m = MEMO_LOG_RE.search(str(line))
        if m:
            return m.group(1)
    return ""


def received_lamports(tx: Dict[str, Any], wallet: str) -> Optional[int]:
    """Balance delta of ``wallet`` in the transaction, or None when it is not an account key."""
    meta = tx.get("meta") or {}
    keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    for i, key in enumerate(keys):
        if _key_str(key) == wallet:
            before = pre[i] if i < len(pre) else 0
            after = post[i] if i < len(post) else 0
            return int(after or 0) - int(before or 0)
    return None


def _signature_of(item: Dict[str, Any]) -> Optional[str]:
    sig = item.get("signature")
    if sig:
        return str(sig)
    sigs = (item.get("transaction") or {}).get("signatures") or []
    return str(sigs[0]) if sigs else None


class PaymentReconciler:
    def __init__(
        self,
        cfg: Optional[Dict[str, Any]] = None,
        db_path: Optional[str] = None,
        http: Optional[aiohttp.ClientSession] = None,
        rpc_url: Optional[str] = None,
    ):
        self.cfg = cfg or {}
        pcfg = section(self.cfg, "payments")
        self.db_path = db_path or resolve_db_path(self.cfg)
        self.http = http
        self.rpc_url = rpc_url or section(self.cfg, "solana").get("rpc_url")
        self.memo_prefix = str(pcfg.get("memo_prefix") or "AMS")
        self.receiving_wallet = str(pcfg.get("receiving_wallet") or "")
        self.required_confirmations = max(1, _to_int(pcfg.get("required_confirmations"), 1))
        self.webhook_secret = str(pcfg.get("webhook_secret") or "")

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def authorize(self, header: Optional[str]) -> bool:
        """Bearer check; open when no secret is configured."""
        if not self.webhook_secret:
            return True
        token = (header or "").replace("Bearer ", "", 1).strip()
        return hmac.compare_digest(token.encode(), self.webhook_secret.encode())

    async def handle_webhook(self, body: Union[Dict[str, Any], List[Dict[str, Any]]], authorization: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        """HTTP-shaped entry point: returns ``(status, payload)``."""
        if not self.authorize(authorization):
            logger.warning("[Payments] unauthorized webhook call (token present: %s)", bool(authorization))
            return 401, {"error": "Unauthorized"}
        transactions = body if isinstance(body, list) else [body]
        try:
            return 200, await self.process(transactions)
        except PaymentConfigError as e:
            logger.error("[Payments] %s", e)
            return 500, {"error": str(e)}

    # ------------------------------------------------------------------
    # RPC
    # ------------------------------------------------------------------
    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        timeout = aiohttp.ClientTimeout(total=RPC_TIMEOUT_S)
        if self.http is None:
            async with aiohttp.ClientSession() as http:
                async with http.post(self.rpc_url, json=payload, timeout=timeout) as resp:
                    data = await resp.json(content_type=None)
        else:
            async with self.http.post(self.rpc_url, json=payload, timeout=timeout) as resp:
                data = await resp.json(content_type=None)
        return (data or {}).get("result")

    async def fetch_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self._rpc(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
        )

    async def current_slot(self) -> int:
        return _to_int(await self._rpc("getSlot", [{"commitment": "confirmed"}]), 0)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    async def _verify(self, db, signature: str) -> Dict[str, Any]:
        tx = await self.fetch_transaction(signature)
        if not tx:
            raise PaymentRejected("Transaction not found on-chain")
        if (tx.get("meta") or {}).get("err"):
            raise PaymentRejected("Transaction failed on-chain")

        slot = _to_int(tx.get("slot"), 0)
        confirmations = await self.current_slot() - slot
        if confirmations < self.required_confirmations:
            raise PaymentRejected(f"Only {confirmations} confirmations (need {self.required_confirmations})")

        delta = received_lamports(tx, self.receiving_wallet)
        if delta is None:
            raise PaymentRejected("Recipient is not the receiving wallet")
        amount_sol = delta / LAMPORTS_PER_SOL
        if amount_sol <= 0:
            raise PaymentRejected("No SOL received by receiving wallet", amount_sol=amount_sol)

        memo = extract_memo(tx)
        parsed = parse_memo(memo, self.memo_prefix)
        if parsed is None:
            raise PaymentRejected(f"Invalid memo: {memo}", amount_sol=amount_sol, memo=memo)
        user_id, pack_id, _nonce = parsed
        ctx = {"user_id": user_id, "pack_id": pack_id, "amount_sol": amount_sol, "memo": memo}

        pack = await database.get_credit_pack(db, pack_id)
        if not pack:
            raise PaymentRejected("Credit pack not found or inactive", **ctx)
        expected = float(pack.get("sol_price") or 0.0)
        if amount_sol < expected * PRICE_TOLERANCE:
            raise PaymentRejected(f"Payment {amount_sol} SOL < required {expected} SOL", **ctx)

        ctx["pack"] = pack
        ctx["credits"] = int(pack.get("credits_amount") or 0) + int(pack.get("bonus_credits") or 0)
        return ctx

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    async def process(self, transactions: List[Dict[str, Any]]) -> Dict[str, int]:
        if not self.receiving_wallet:
            raise PaymentConfigError("Receiving wallet not configured")
        logger.info("[Payments] webhook received (%d transactions)", len(transactions))

        processed = 0
        async with database.connect_db(self.db_path) as db:
            for item in transactions:
                signature = _signature_of(item or {})
                if not signature:
                    continue
                try:
                    existing = await database.get_credit_transaction(db, signature)
                    if existing and existing.get("status") == "confirmed":
                        logger.info("[Payments] %s already confirmed", signature)
                        continue

                    ctx = await self._verify(db, signature)
                    credited = await database.credit_payment(
                        db,
                        signature=signature,
                        user_id=ctx["user_id"],
                        pack_id=ctx["pack_id"],
                        amount_sol=ctx["amount_sol"],
                        credits=ctx["credits"],
                        memo=ctx["memo"],
                        pack_name=ctx["pack"].get("name"),
                    )
                    if credited:
                        processed += 1
                        logger.info(
                            "[Payments] %d credits added for %s (%s)",
                            ctx["credits"], ctx["user_id"], signature,
                        )
                except PaymentRejected as r:
                    logger.warning("[Payments] %s rejected: %s", signature, r.reason)
                    await database.record_failed_payment(
                        db, signature, r.reason,
                        user_id=r.context.get("user_id"),
                        pack_id=r.context.get("pack_id"),
                        amount_sol=r.context.get("amount_sol"),
                        memo=r.context.get("memo"),
                    )
                except Exception as e:
                    logger.error("[Payments] error processing %s: %s", signature, e, exc_info=True)
                    try:
                        await database.record_failed_payment(db, signature, f"Processing error: {e}"[:200])
                    except Exception as db_err:
                        logger.error("[Payments] could not record failure for %s: %s", signature, db_err)

        return {"processed": processed, "total": len(transactions)}
