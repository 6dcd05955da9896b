"""
Solana RPC client for the rewards pipeline.
Reads transaction history of the tracked wallet, submits treasury transfers
and streams account-change notifications over websocket.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Union

import base58
import structlog
import websockets
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import transfer, TransferParams
from solders.transaction import Transaction

from degen_backend.core.config import Settings, SolanaConfig, settings
from degen_backend.core.exceptions import ConfigurationError, SolanaRPCError


logger = structlog.get_logger(__name__)


@dataclass
class TransactionDetail:
    """Balance-level view of a confirmed transaction."""
    signature: str
    slot: int
    block_time: Optional[datetime]
    success: bool
    account_keys: List[str] = field(default_factory=list)
    pre_balances: List[int] = field(default_factory=list)
    post_balances: List[int] = field(default_factory=list)

    def balance_delta(self, address: str) -> int:
        """Lamport balance change of ``address``; 0 when it is not involved."""
        try:
            index = self.account_keys.index(address)
        except ValueError:
            return 0
        if index >= len(self.pre_balances) or index >= len(self.post_balances):
            return 0
        return self.post_balances[index] - self.pre_balances[index]


class SolanaClient:
    """
    Async Solana RPC client.

    Provides:
    - Recent signature listing for an address
    - Transaction balance details
    - Signed SOL transfers from the treasury keypair
    - accountSubscribe notifications with reconnection
    """

    def __init__(self, config: Optional[Settings] = None):
        config = config or settings
        self.rpc_config = SolanaConfig.get_rpc_config(config)
        self.ws_config = SolanaConfig.get_websocket_config(config)
        self.commitment = Commitment(self.rpc_config["commitment"])
        self.client = AsyncClient(
            endpoint=self.rpc_config["endpoint"],
            commitment=self.commitment,
            timeout=self.rpc_config["timeout"]
        )
        self._treasury_key = config.treasury_private_key
        self._treasury: Optional[Keypair] = None
        self.logger = logger.bind(service="solana_client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the RPC client connection."""
        await self.client.close()

    @property
    def treasury(self) -> Keypair:
        """Treasury keypair, decoded from the base58 secret on first use."""
        if self._treasury is None:
            if not self._treasury_key:
                raise ConfigurationError("TREASURY_PRIVATE_KEY is not configured")
            try:
                self._treasury = Keypair.from_bytes(base58.b58decode(self._treasury_key))
            except ValueError as e:
                raise ConfigurationError(f"Invalid treasury private key: {e}")
            self.logger.info("Treasury keypair loaded", treasury=str(self._treasury.pubkey()))
        return self._treasury

    async def get_health(self) -> bool:
        """Check if the RPC endpoint is healthy."""
        try:
            response = await self.client.get_health()
            return response.value == "ok"
        except Exception as e:
            self.logger.error("Health check failed", error=str(e))
            return False

    async def get_recent_signatures(
        self,
        address: Union[str, Pubkey],
        limit: int = 10
    ) -> List[str]:
        """Get the most recent transaction signatures for an address, newest first."""
        try:
            if isinstance(address, str):
                address = Pubkey.from_string(address)

            response = await self.client.get_signatures_for_address(address, limit=limit)
            return [str(sig_info.signature) for sig_info in response.value]

        except Exception as e:
            self.logger.error("Failed to get signatures", address=str(address), error=str(e))
            raise SolanaRPCError(f"Failed to get signatures for address: {e}", {"address": str(address)})

    async def get_transaction_detail(self, signature: str) -> Optional[TransactionDetail]:
        """Get balance details of a transaction, None if the node has no record of it."""
        try:
            response = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                max_supported_transaction_version=0
            )
        except Exception as e:
            self.logger.error("Failed to get transaction", signature=signature, error=str(e))
            raise SolanaRPCError(f"Failed to get transaction: {e}", {"signature": signature})

        if not response.value:
            self.logger.debug("No transaction data returned", signature=signature[:20])
            return None

        tx = response.value
        meta = tx.transaction.meta
        if not meta:
            self.logger.debug("Transaction has no meta", signature=signature[:20])
            return None

        account_keys = [str(key) for key in tx.transaction.transaction.message.account_keys]
        # v0 transactions list lookup-table accounts after the static keys
        loaded = meta.loaded_addresses
        if loaded:
            account_keys.extend(str(key) for key in loaded.writable)
            account_keys.extend(str(key) for key in loaded.readonly)

        return TransactionDetail(
            signature=signature,
            slot=tx.slot,
            block_time=datetime.fromtimestamp(tx.block_time, timezone.utc).replace(tzinfo=None) if tx.block_time else None,
            success=meta.err is None,
            account_keys=account_keys,
            pre_balances=list(meta.pre_balances),
            post_balances=list(meta.post_balances)
        )

    async def submit_transfer(self, to_address: str, lamports: int) -> str:
        """Sign and send a SOL transfer from the treasury. Returns the signature."""
        try:
            recipient = Pubkey.from_string(to_address)
        except ValueError as e:
            raise SolanaRPCError(f"Invalid recipient address: {e}", {"to": to_address})

        payer = self.treasury
        try:
            recent_blockhash = await self.client.get_latest_blockhash()

            transfer_instruction = transfer(
                TransferParams(
                    from_pubkey=payer.pubkey(),
                    to_pubkey=recipient,
                    lamports=lamports
                )
            )
            transaction = Transaction.new_signed_with_payer(
                [transfer_instruction],
                payer.pubkey(),
                [payer],
                recent_blockhash.value.blockhash
            )

            response = await self.client.send_transaction(transaction)
            signature = str(response.value)

        except Exception as e:
            self.logger.error("Transfer submission failed", to=to_address, lamports=lamports, error=str(e))
            raise SolanaRPCError(f"Failed to submit transfer: {e}", {"to": to_address, "lamports": lamports})

        self.logger.info("💸 Transfer submitted", to=to_address, lamports=lamports, signature=signature)
        return signature

    async def confirm_transfer(self, signature: str) -> None:
        """Wait until the transfer is confirmed; raises if it failed or timed out."""
        try:
            confirmation = await self.client.confirm_transaction(
                Signature.from_string(signature),
                commitment=self.commitment
            )
        except Exception as e:
            raise SolanaRPCError(f"Failed to confirm transaction: {e}", {"signature": signature})

        status = confirmation.value[0] if confirmation.value else None
        if status is None:
            raise SolanaRPCError("Transaction not found after confirmation", {"signature": signature})
        if status.err:
            raise SolanaRPCError(f"Transaction failed: {status.err}", {"signature": signature})

    async def subscribe_account_changes(
        self,
        address: str,
        callback: Callable[[], Awaitable[Any]],
        auto_reconnect: bool = True,
        max_reconnect_attempts: int = 10
    ) -> None:
        """
        Stream accountSubscribe notifications for ``address`` and invoke
        ``callback`` on every change. Runs until cancelled.
        """
        ws_url = self.ws_config["endpoint"]
        reconnect_attempts = 0
        base_retry_delay = 2

        while True:
            try:
                self.logger.info("🔌 Connecting to websocket", url=ws_url, attempt=reconnect_attempts + 1)

                async with websockets.connect(
                    ws_url,
                    ping_interval=30,
                    ping_timeout=10,
                    close_timeout=5
                ) as websocket:
                    request_id = str(uuid.uuid4())
                    subscribe_msg = {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "method": "accountSubscribe",
                        "params": [
                            address,
                            {"encoding": "base64", "commitment": self.ws_config["commitment"]}
                        ]
                    }
                    await websocket.send(json.dumps(subscribe_msg))
                    reconnect_attempts = 0

                    async for raw_message in websocket:
                        try:
                            message = json.loads(raw_message)
                        except json.JSONDecodeError as e:
                            self.logger.error("Failed to parse websocket message", error=str(e))
                            continue

                        if message.get("id") == request_id:
                            if "error" in message:
                                raise SolanaRPCError(f"Subscription error: {message['error']}")
                            self.logger.info(
                                "✅ Subscribed to account changes",
                                address=address,
                                subscription_id=message.get("result")
                            )
                        elif message.get("method") == "accountNotification":
                            await callback()

            except asyncio.CancelledError:
                self.logger.info("Account subscription cancelled", address=address)
                raise

            except (websockets.exceptions.WebSocketException, OSError, SolanaRPCError) as e:
                reconnect_attempts += 1
                if not auto_reconnect or reconnect_attempts >= max_reconnect_attempts:
                    self.logger.error("❌ Websocket subscription gave up", attempts=reconnect_attempts, error=str(e))
                    raise SolanaRPCError(f"Account subscription failed: {e}", {"address": address})

                retry_delay = min(base_retry_delay * (2 ** reconnect_attempts), 60)
                self.logger.warning(
                    "🔄 Websocket connection lost, reconnecting",
                    error=str(e),
                    attempt=reconnect_attempts,
                    retry_delay=retry_delay
                )
                await asyncio.sleep(retry_delay)
