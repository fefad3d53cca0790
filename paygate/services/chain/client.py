"""Ethereum JSON-RPC access for stablecoin balances, receipts and Transfer logs.

`ChainClient` wraps an `AsyncWeb3` instance behind the narrow surface the
gateway needs and exposes a small listener registry (`on`,
`remove_all_listeners`) that the polling loop dispatches into.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.retry import retry_async


# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

TOKEN_ADDRESSES = {
    "mainnet": {
        "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0CE3606EB48",
        "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    },
    "sepolia": {
        "USDC": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        "USDT": "0x3E3fE2b5cF8c087bE77Df9B7f5269cF2fcB6B157",
    },
}
TOKEN_DECIMALS = {"USDC": 6, "USDT": 6}

DEFAULT_RPC_URL = "http://localhost:8545"

TRANSFER = "Transfer"
BLOCK = "block"


@dataclass(frozen=True)
class Token:
    symbol: str
    address: str
    decimals: int


@dataclass(frozen=True)
class TransferEvent:
    """One decoded ERC-20 `Transfer(from, to, value)` log."""

    token: str
    token_address: str
    from_address: str
    to_address: str
    amount: Decimal
    transaction_hash: str
    log_index: int
    block_number: int


def tokens_for(network: str) -> dict[str, Token]:
    addresses = TOKEN_ADDRESSES.get(network)
    if addresses is None:
        raise ValueError(f"unsupported chain network: {network}")
    return {
        symbol: Token(symbol=symbol, address=address, decimals=TOKEN_DECIMALS[symbol])
        for symbol, address in addresses.items()
    }


def _as_bytes(value) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


def _topic_address(topic) -> str:
    return Web3.to_checksum_address("0x" + _as_bytes(topic)[-20:].hex())


def decode_transfer_log(log, token: Token) -> TransferEvent | None:
    """Decode a raw `eth_getLogs` entry; returns None for non-standard logs."""

    topics = log["topics"]
    if len(topics) != 3 or "0x" + _as_bytes(topics[0]).hex() != TRANSFER_TOPIC:
        return None
    data = _as_bytes(log["data"])
    if len(data) < 32:
        return None
    raw_amount = int.from_bytes(data[:32], "big")
    return TransferEvent(
        token=token.symbol,
        token_address=token.address,
        from_address=_topic_address(topics[1]),
        to_address=_topic_address(topics[2]),
        amount=Decimal(raw_amount).scaleb(-token.decimals),
        transaction_hash="0x" + _as_bytes(log["transactionHash"]).hex(),
        log_index=int(log["logIndex"]),
        block_number=int(log["blockNumber"]),
    )


Handler = Callable[..., Awaitable[None]]
WatchedWallets = Callable[[], tuple[Iterable[str], Iterable[str]]]


def address_topic(address: str) -> str:
    """32-byte topic form of an address, as indexed Transfer arguments are stored."""

    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


class ChainClient:
    """Polls new blocks for monitored token Transfer logs and answers RPC queries."""

    def __init__(
        self,
        rpc_url: str | None = None,
        network: str | None = None,
        *,
        web3: AsyncWeb3 | None = None,
        poll_interval_seconds: float | None = None,
        lookback_blocks: int | None = None,
        max_block_range: int | None = None,
        retries: int | None = None,
        retry_delay_seconds: float | None = None,
    ) -> None:
        url = rpc_url or settings.rpc_url or DEFAULT_RPC_URL
        self.w3 = web3 or AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": settings.rail_timeout_seconds}))
        self.tokens = tokens_for(network or settings.chain_network)
        self._by_address = {token.address.lower(): token for token in self.tokens.values()}
        self.poll_interval_seconds = poll_interval_seconds or settings.chain_poll_interval_seconds
        self.lookback_blocks = settings.chain_lookback_blocks if lookback_blocks is None else lookback_blocks
        self.max_block_range = max_block_range or settings.chain_max_block_range
        self.retries = retries or settings.chain_rpc_retries
        self.retry_delay_seconds = (
            settings.chain_rpc_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
        )
        self.last_block: int | None = None
        self._listeners: dict[str, list[Handler]] = {TRANSFER: [], BLOCK: []}
        self._watched: WatchedWallets | None = None

    def watch(self, provider: WatchedWallets) -> None:
        """Restrict log queries to transfers into or out of the provider's wallets.

        `provider()` returns `(recipients, senders)` and is read once per block
        range, so registry refreshes apply without a reconnect.
        """

        self._watched = provider

    def on(self, event: str, handler: Handler) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def remove_all_listeners(self, event: str) -> None:
        self._listeners[event] = []

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def _rpc(self, operation, name: str):
        return await retry_async(
            operation,
            dependency=f"chain_{name}",
            attempts=self.retries,
            delay_seconds=self.retry_delay_seconds,
        )

    async def connect(self) -> int:
        """Check the endpoint and set the polling cursor; returns the head block."""

        if not await self.w3.is_connected():
            raise ConnectionError("chain RPC endpoint is not reachable")
        head = await self._rpc(lambda: self.w3.eth.block_number, "block_number")
        if self.last_block is None:
            self.last_block = max(head - self.lookback_blocks, 0)
        logger.info("chain_connected head=%s cursor=%s", head, self.last_block)
        return head

    async def get_token_balance(self, token: str, wallet_address: str) -> Decimal | None:
        """Token balance in whole units, or None when it cannot be fetched."""

        config = self.tokens.get(token)
        if config is None:
            logger.error("chain_balance_unknown_token token=%s", token)
            return None
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(config.address), abi=ERC20_ABI)
        try:
            raw = await self._rpc(
                lambda: contract.functions.balanceOf(Web3.to_checksum_address(wallet_address)).call(),
                "balance_of",
            )
        except Exception as exc:
            logger.error("chain_balance_failed wallet=%s token=%s error=%s", wallet_address, token, exc)
            return None
        return Decimal(int(raw)).scaleb(-config.decimals)

    async def get_transaction_receipt(self, transaction_hash: str):
        """Receipt for a mined transaction, None while pending."""

        async def fetch():
            try:
                return await self.w3.eth.get_transaction_receipt(transaction_hash)
            except TransactionNotFound:
                return None

        return await self._rpc(fetch, "receipt")

    async def verify_transaction(self, transaction_hash: str) -> bool | None:
        """True when mined successfully, False when pending or reverted, None on RPC failure."""

        try:
            receipt = await self.get_transaction_receipt(transaction_hash)
        except Exception as exc:
            logger.error("chain_verify_failed hash=%s error=%s", transaction_hash, exc)
            return None
        if receipt is None:
            logger.info("chain_receipt_pending hash=%s", transaction_hash)
            return False
        if int(receipt["status"]) == 1:
            return True
        logger.warning("chain_transaction_reverted hash=%s", transaction_hash)
        return False

    async def send_tokens(self, private_key: str, token: str, to_address: str, amount: Decimal) -> str:
        """Sign and broadcast an ERC-20 transfer; returns the transaction hash.

        The broadcast is sent once, outside `retry_async`.
        """

        config = self.tokens.get(token)
        if config is None:
            raise ValueError(f"unsupported token: {token}")
        account = Account.from_key(private_key)
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(config.address), abi=ERC20_ABI)
        units = int(Decimal(str(amount)).scaleb(config.decimals))
        nonce = await self._rpc(lambda: self.w3.eth.get_transaction_count(account.address, "pending"), "nonce")
        tx = await contract.functions.transfer(Web3.to_checksum_address(to_address), units).build_transaction(
            {"from": account.address, "nonce": nonce}
        )
        signed = account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def _dispatch(self, event: str, *args) -> None:
        for handler in list(self._listeners.get(event, [])):
            await handler(*args)

    async def _get_logs(self, params: dict) -> list:
        return list(await self._rpc(lambda: self.w3.eth.get_logs(params), "get_logs"))

    async def _fetch_logs(self, from_block: int, to_block: int) -> list:
        """Transfer logs for one range, ordered by position and free of duplicates."""

        base = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": [Web3.to_checksum_address(token.address) for token in self.tokens.values()],
        }
        if self._watched is None:
            logs = await self._get_logs({**base, "topics": [TRANSFER_TOPIC]})
        else:
            recipients, senders = self._watched()
            recipient_topics = sorted({address_topic(address) for address in recipients})
            sender_topics = sorted({address_topic(address) for address in senders})
            logs = []
            if recipient_topics:
                logs += await self._get_logs({**base, "topics": [TRANSFER_TOPIC, None, recipient_topics]})
            if sender_topics:
                logs += await self._get_logs({**base, "topics": [TRANSFER_TOPIC, sender_topics]})
        unique = {}
        for log in logs:
            key = (int(log["blockNumber"]), int(log["logIndex"]))
            unique.setdefault(key, log)
        return [unique[key] for key in sorted(unique)]

    async def poll_once(self) -> int:
        """Process every block since the cursor; returns the number of Transfer logs dispatched.

        The cursor moves only after a range has been fully dispatched, so a
        failure part way through replays that range on the next call. A
        provider error on `eth_getLogs` halves the range down to one block.
        """

        if self.last_block is None:
            await self.connect()
        head = await self._rpc(lambda: self.w3.eth.block_number, "block_number")
        dispatched = 0
        block_range = self.max_block_range
        while self.last_block < head:
            from_block = self.last_block + 1
            to_block = min(head, self.last_block + block_range)
            try:
                logs = await self._fetch_logs(from_block, to_block)
            except Exception as exc:
                if to_block == from_block:
                    raise
                block_range = max((to_block - from_block + 1) // 2, 1)
                logger.warning(
                    "chain_get_logs_failed from=%s to=%s next_range=%s error=%s",
                    from_block,
                    to_block,
                    block_range,
                    exc,
                )
                continue
            for log in logs:
                token = self._by_address.get(str(log["address"]).lower())
                if token is None:
                    continue
                transfer = decode_transfer_log(log, token)
                if transfer is None:
                    continue
                await self._dispatch(TRANSFER, transfer)
                dispatched += 1
            await self._dispatch(BLOCK, to_block)
            self.last_block = to_block
        return dispatched

    async def poll_forever(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval_seconds)
