"""
PaymentEngine: the API-facing surface of PayWatch, constructed once at process start.

Wires the per-network config provider, one ChainClient per network, the
transfer verifier, the subscription supervisor (campaign and platform wallet
listeners), the donation dispatcher and the background sweeps. Route handlers
receive the engine by injection; there is no module-level state.

Business outcomes are returned as values (VerificationResult, status dicts).
NetworkError from verify_payment propagates so the API layer can answer
"try again"; listener hooks never raise for a bad wallet, they report it.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping

from backend_paywatch.config.env import mask_url
from backend_paywatch.config.networks import (
    NETWORK_ETHEREUM,
    NetworkConfig,
    NetworkConfigProvider,
    SettingsStore,
)
from backend_paywatch.config.settings import AppSettings
from backend_paywatch.core.exceptions import PaywatchError, UnsupportedNetworkError
from backend_paywatch.donations.recorder import DonationDispatcher, DonationHandler, DonationRecorder
from backend_paywatch.evm.client import ChainClient
from backend_paywatch.evm.parser import addresses_equal, format_units, is_address, is_native_token
from backend_paywatch.paywatch_logging import get_logger
from backend_paywatch.subscriptions.models import (
    PLATFORM_ENTITY_ID,
    EntityId,
    MonitoredEntity,
    TransferObserved,
)
from backend_paywatch.subscriptions.reconcile import ReconciliationSweep
from backend_paywatch.subscriptions.supervisor import STATUS_NOT_ACTIVE, SubscriptionSupervisor
from backend_paywatch.verification.pending import PendingPaymentStore, poll_pending_payments
from backend_paywatch.verification.results import VerificationResult
from backend_paywatch.verification.verifier import TransferExpectation, TransferVerifier

logger = get_logger(__name__)

ClientFactory = Callable[[NetworkConfig], ChainClient]

_GWEI_DECIMALS = 9


class PaymentEngine:
    """
    Facade over verification and wallet monitoring.

    store: settings/persistence collaborator (None uses env and hardcoded fallbacks).
    recorder: default DonationRecorder for events without a per-entity handler.
    pending_store: optional; when set, run() also polls pending payments.
    client_factory: builds the ChainClient for a NetworkConfig (tests inject fakes).
    listener_network: network whose token transfers the listeners watch.
    """

    def __init__(
        self,
        store: SettingsStore | None = None,
        *,
        settings: AppSettings | None = None,
        recorder: DonationRecorder | None = None,
        pending_store: PendingPaymentStore | None = None,
        client_factory: ClientFactory | None = None,
        listener_network: str = NETWORK_ETHEREUM,
    ) -> None:
        self._settings = settings or AppSettings()
        self._store = store
        self._provider = NetworkConfigProvider(store, ttl_sec=self._settings.config_cache_ttl_sec)
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, ChainClient] = {}
        self._retired_clients: list[ChainClient] = []
        self._listener_network = listener_network
        self._events: asyncio.Queue[TransferObserved] = asyncio.Queue(maxsize=self._settings.event_queue_maxsize)
        self._dispatcher = DonationDispatcher(self._events, recorder)
        self._pending_store = pending_store
        self._supervisor: SubscriptionSupervisor | None = None
        self._reconcile: ReconciliationSweep | None = None
        self._stop = asyncio.Event()
        self._consumer_stop = asyncio.Event()
        self._consumer: asyncio.Task[None] | None = None
        self._tasks: list[asyncio.Task[None]] = []

    def _default_client(self, config: NetworkConfig) -> ChainClient:
        return ChainClient(config, max_retries=self._settings.rpc_max_retries)

    @property
    def config_provider(self) -> NetworkConfigProvider:
        return self._provider

    @property
    def dispatcher(self) -> DonationDispatcher:
        return self._dispatcher

    @property
    def supervisor(self) -> SubscriptionSupervisor:
        """Listener supervisor, built on first use from the listener network config."""
        if self._supervisor is None:
            config = self._provider.get_config(self._listener_network)
            self._supervisor = SubscriptionSupervisor(
                self.client(self._listener_network),
                token_address=config.token_address,
                token_decimals=config.token_decimals,
                settings=self._settings,
                events=self._events,
            )
        return self._supervisor

    def client(self, network: str) -> ChainClient:
        """
        ChainClient for network. A new client replaces the cached one when the
        network's config snapshot changed; the old one is closed on shutdown.
        """
        config = self._provider.get_config(network)
        existing = self._clients.get(network)
        if existing is not None and existing.config == config:
            return existing
        if existing is not None:
            self._retired_clients.append(existing)
        client = self._client_factory(config)
        self._clients[network] = client
        return client

    def default_token(self, network: str) -> str:
        return self._provider.get_config(network).token_address

    async def _resolve_decimals(self, config: NetworkConfig, token_address: str) -> int:
        if is_native_token(token_address):
            return config.native_decimals
        if config.token_address and addresses_equal(token_address, config.token_address):
            return config.token_decimals
        return await self.client(config.network).get_token_decimals(token_address)

    async def verify_payment(
        self,
        network: str,
        tx_hash: str,
        expected_amount: Decimal | str | int | float,
        token_address: str,
        platform_wallet: str,
    ) -> VerificationResult:
        """
        Verify that tx_hash pays at least expected_amount of token_address to platform_wallet.

        Raises UnsupportedNetworkError / ValueError for bad arguments and
        NetworkError when the node stays unreachable after retries.
        """
        config = self._provider.get_config(network)
        try:
            amount = Decimal(str(expected_amount))
        except InvalidOperation as e:
            raise ValueError(f"invalid expected amount {expected_amount!r}") from e
        if not is_native_token(token_address) and not is_address(token_address):
            raise ValueError(f"invalid token address {token_address!r}")
        if not is_address(platform_wallet):
            raise ValueError(f"invalid platform wallet {platform_wallet!r}")
        decimals = await self._resolve_decimals(config, token_address)
        expectation = TransferExpectation(
            token=token_address,
            recipient=platform_wallet,
            min_amount=amount,
            decimals=decimals,
        )
        verifier = TransferVerifier(
            self.client(network),
            min_confirmations=config.min_confirmations,
            expected_chain_id=config.chain_id,
        )
        return await verifier.verify(tx_hash, expectation)

    async def verify_activation_fee(self, network: str, tx_hash: str) -> VerificationResult:
        """Verify an account activation payment against the network fee from the settings store."""
        fee = self._store.get_network_fee(network) if self._store is not None else None
        if fee is None:
            raise ValueError(f"no activation fee configured for network {network!r}")
        config = self._provider.get_config(network)
        expectation = TransferExpectation(
            token=fee.token_address,
            recipient=fee.platform_wallet,
            min_amount=fee.amount,
            decimals=fee.decimals,
        )
        verifier = TransferVerifier(
            self.client(network),
            min_confirmations=config.min_confirmations,
            expected_chain_id=config.chain_id,
        )
        return await verifier.verify(tx_hash, expectation)

    async def start_campaign_listener(
        self,
        campaign_id: EntityId,
        owner_wallet: str,
        on_donation: DonationHandler | None = None,
    ) -> dict[str, Any]:
        """Start watching a campaign wallet. Idempotent per campaign_id."""
        try:
            result = await self.supervisor.start_listener(campaign_id, owner_wallet)
        except (ValueError, RuntimeError, PaywatchError) as e:
            logger.warning("campaign_listener_start_failed", campaign_id=campaign_id, error=str(e))
            return {"success": False, "error": str(e)}
        if on_donation is not None:
            self._dispatcher.register(campaign_id, on_donation)
        return {
            "success": True,
            "status": result.status,
            "connection_kind": result.handle.connection_kind.value,
            "listener": result.handle.to_dict(),
        }

    async def stop_campaign_listener(self, campaign_id: EntityId) -> dict[str, Any]:
        if self._supervisor is None:
            status = STATUS_NOT_ACTIVE
        else:
            status = await self._supervisor.stop_listener(campaign_id)
        self._dispatcher.unregister(campaign_id)
        return {"success": True, "status": status}

    async def start_all_campaign_listeners(
        self,
        campaigns: Iterable[MonitoredEntity | Mapping[str, Any]],
        on_donation: DonationHandler | None = None,
    ) -> dict[str, Any]:
        """Resume monitoring for every active campaign (process startup)."""
        config = self._provider.get_config(self._listener_network)
        if not config.monitoring_enabled:
            logger.info("monitoring_disabled", network=config.network)
            return {"success": True, "status": "monitoring_disabled", "started": 0, "failed": 0}
        items: list[MonitoredEntity | Mapping[str, Any]] = []
        for campaign in campaigns:
            if not isinstance(campaign, MonitoredEntity):
                try:
                    campaign = MonitoredEntity.from_mapping(campaign)
                except ValueError as e:
                    # Unreadable rows still go to start_all, which reports them as failed
                    logger.warning("campaign_row_invalid", error=str(e))
            items.append(campaign)
            if on_donation is not None and isinstance(campaign, MonitoredEntity) and campaign.active:
                self._dispatcher.register(campaign.id, on_donation)
        result = await self.supervisor.start_all(items)
        return {
            "success": True,
            "status": "monitoring_enabled",
            "started": result.started,
            "failed": result.failed,
            "already_active": result.already_active,
            "errors": dict(result.errors),
        }

    async def start_platform_listener(self, on_payment: DonationHandler | None = None) -> dict[str, Any]:
        """Watch the platform wallet of the listener network for incoming payments."""
        config = self._provider.get_config(self._listener_network)
        if not config.platform_wallet:
            logger.warning("platform_listener_no_wallet", network=config.network)
            return {"success": False, "error": "no platform wallet configured"}
        return await self.start_campaign_listener(PLATFORM_ENTITY_ID, config.platform_wallet, on_payment)

    def get_campaign_listeners_status(self) -> dict[str, Any]:
        handles = self._supervisor.status() if self._supervisor is not None else []
        return {
            "total_active": len(handles),
            "listeners": [h.to_dict() for h in handles],
        }

    async def get_gas_prices(self, network: str) -> dict[str, str | None] | None:
        """Current fees in gwei as strings; None when the node cannot be reached."""
        try:
            fee = await self.client(network).get_fee_data()
        except PaywatchError as e:
            logger.warning("gas_prices_failed", network=network, error=str(e))
            return None

        def gwei(value: int | None) -> str | None:
            return str(format_units(value, _GWEI_DECIMALS)) if value is not None else None

        return {
            "gas_price": gwei(fee.gas_price),
            "max_fee_per_gas": gwei(fee.max_fee_per_gas),
            "max_priority_fee_per_gas": gwei(fee.max_priority_fee_per_gas),
        }

    async def test_rpc_connection(self, network: str = NETWORK_ETHEREUM) -> dict[str, Any]:
        try:
            config = self._provider.get_config(network)
        except UnsupportedNetworkError as e:
            return {"success": False, "error": str(e)}
        rpc_url = mask_url(config.http_endpoint)
        try:
            block = await self.client(network).latest_block_number()
        except PaywatchError as e:
            logger.warning("rpc_connection_failed", network=network, rpc_url=rpc_url, error=str(e))
            return {"success": False, "error": str(e), "rpc_url": rpc_url}
        logger.info("rpc_connected", network=network, rpc_url=rpc_url, block_number=block)
        return {"success": True, "block_number": block, "rpc_url": rpc_url}

    def validate_payment_request(
        self,
        network: str,
        user_wallet: str,
        platform_wallet: str,
        amount: Any,
    ) -> dict[str, Any]:
        """Cheap request validation before any chain access."""
        if not network or network not in self._provider.get_all():
            return {"valid": False, "error": "Invalid or unsupported network"}
        if not is_address(user_wallet):
            return {"valid": False, "error": "Invalid user wallet address"}
        if not is_address(platform_wallet):
            return {"valid": False, "error": "Invalid platform wallet address"}
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            return {"valid": False, "error": "Invalid amount"}
        if not value.is_finite() or value <= 0:
            return {"valid": False, "error": "Invalid amount"}
        return {"valid": True}

    async def run(self) -> None:
        """Start the donation consumer and background sweeps. Returns immediately; idempotent."""
        if self._consumer is not None:
            return
        self._stop.clear()
        self._consumer_stop.clear()
        loop = asyncio.get_running_loop()
        self._consumer = loop.create_task(self._dispatcher.run(self._consumer_stop), name="donation-consumer")
        if self._settings.reconcile_interval_sec > 0:
            config = self._provider.get_config(self._listener_network)
            self._reconcile = ReconciliationSweep(
                self.supervisor,
                token_address=config.token_address,
                token_decimals=config.token_decimals,
                lookback_blocks=self._settings.reconcile_lookback_blocks,
                interval_sec=self._settings.reconcile_interval_sec,
            )
            self._tasks.append(loop.create_task(self._reconcile.run(), name="reconcile-sweep"))
        if self._pending_store is not None:
            self._tasks.append(loop.create_task(self._pending_loop(self._pending_store), name="pending-payments"))
        logger.info("engine_started", tasks=[t.get_name() for t in (self._consumer, *self._tasks)])

    async def _pending_loop(self, store: PendingPaymentStore) -> None:
        while not self._stop.is_set():
            try:
                await poll_pending_payments(self, store)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("pending_payments_poll_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._settings.pending_poll_interval_sec)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        """
        Stop every event producer first (listeners, reconciliation), then let
        the consumer record whatever is still queued, then close RPC clients.
        """
        logger.info("engine_shutdown_started", listeners=len(self._supervisor) if self._supervisor else 0)
        if self._reconcile is not None:
            self._reconcile.stop()
        if self._supervisor is not None:
            await self._supervisor.shutdown()
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        self._consumer_stop.set()
        if self._consumer is not None:
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        # Events queued while the consumer never ran
        await self._dispatcher.drain()
        for client in [*self._clients.values(), *self._retired_clients]:
            await client.aclose()
        self._clients.clear()
        self._retired_clients.clear()
        logger.info(
            "engine_shutdown_done",
            donations_processed=self._dispatcher.processed,
            donations_failed=self._dispatcher.failed,
        )
