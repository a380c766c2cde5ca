import time
from typing import Callable, Optional

from .cart import CartEngine, CartSnapshotStore, Product
from .checkout import CheckoutService
from .config import Settings, settings
from .csrf import CsrfTokenCache
from .offline_queue import OfflineQueue
from .printers import EscPosPrinterAdapter, FileExportAdapter, ReceiptPrinter
from .promotions import MISS, PromotionCache
from .receipts import ReceiptPrintJob
from .storage import DurableStore, open_store
from .transport import SaleTransport
from ..workers.connectivity import ConnectivityMonitor
from ..workers.sync_driver import BackoffPolicy, SyncDriver


class AgentState:
    """Everything one till needs, wired once at startup."""

    def __init__(
        self,
        store: DurableStore,
        transport: SaleTransport,
        cfg: Settings = settings,
        clock: Callable[[], float] = time.time,
        printer: Optional[ReceiptPrinter] = None,
    ):
        self.settings = cfg
        self.store = store
        self.transport = transport
        self.queue = OfflineQueue(store, clock=clock)
        self.csrf = CsrfTokenCache(transport, path=cfg.csrf_path, ttl_s=cfg.csrf_ttl_s, clock=clock)
        self.promotions = PromotionCache(
            transport,
            store_id=cfg.store_id,
            csrf=self.csrf,
            path=cfg.promotions_path,
            ttl_s=cfg.promo_ttl_s,
            debounce_s=cfg.promo_debounce_s,
            clock=clock,
            timeout_s=cfg.request_timeout_s,
        )
        self.cart = CartEngine(
            CartSnapshotStore(store, clock=clock),
            tax_rate=cfg.tax_rate,
            tax_included=cfg.tax_included,
            redeem_value=cfg.redeem_value,
            promotions=self.promotions,
        )
        self.promotions.on_update = lambda _found: self.cart.reprice()
        self.driver = SyncDriver(
            self.queue,
            transport,
            backoff=BackoffPolicy(cfg.sync_backoff_base_s, cfg.sync_backoff_max_s),
            escalation_threshold=cfg.sync_escalation_attempts,
            lease_s=cfg.sync_lease_s,
        )
        self.monitor = ConnectivityMonitor(self.driver, transport, interval_s=cfg.connectivity_probe_s)
        self.checkout = CheckoutService(
            self.queue,
            transport,
            is_online=lambda: self.driver.online,
            sales_url=cfg.sales_path,
            store_name=cfg.store_name,
            currency=cfg.currency,
        )
        self.printer = printer or ReceiptPrinter([EscPosPrinterAdapter(), FileExportAdapter(cfg.receipt_dir)])
        self.last_receipt: Optional[ReceiptPrintJob] = None

    @classmethod
    def from_settings(cls, cfg: Settings = settings, db_path: Optional[str] = None) -> "AgentState":
        store = open_store(db_path or cfg.db_path)
        transport = SaleTransport(cfg.api_base_url, timeout_s=cfg.request_timeout_s)
        return cls(store, transport, cfg)

    def add_product(self, product: Product):
        item = self.cart.add_item(product)
        if self.promotions.get_cached_promotion(product.id) is MISS:
            # Priced at list for now; reprice() runs when the batch lands.
            self.promotions.queue_promotion_fetch(product.id)
        return item

    async def aclose(self):
        self.monitor.stop()
        await self.promotions.flush()
        await self.checkout.wait_drains()
        await self.transport.aclose()
