import json
from decimal import Decimal

import httpx
import pytest

from chainsync.app.cart import CartEngine, Product
from chainsync.app.csrf import CsrfTokenCache
from chainsync.app.promotions import MISS, Promotion, PromotionCache
from chainsync.app.transport import SaleTransport

from conftest import BASE_URL


def _cache(backend, clock, **kw) -> PromotionCache:
    transport = backend.transport()
    csrf = CsrfTokenCache(transport, clock=clock)
    return PromotionCache(transport, store_id="store-1", csrf=csrf, clock=clock, **kw)


def _promo(pid="promo-1", **fields):
    return {"id": pid, "name": "Spring sale", "promotionType": "percentage", **fields}


@pytest.mark.asyncio
async def test_entry_is_fresh_at_59s_and_stale_at_61s(backend, clock):
    backend.promotions = {"sku-1": _promo(discountPercent="10")}
    cache = _cache(backend, clock)
    await cache.fetch_promotions(["sku-1"])

    clock.advance(59)
    hit = cache.get_cached_promotion("sku-1")
    assert isinstance(hit, Promotion)
    assert hit.discount_percent == Decimal("10")

    clock.advance(2)
    assert cache.get_cached_promotion("sku-1") is MISS


@pytest.mark.asyncio
async def test_only_stale_ids_are_requested(backend, clock):
    backend.promotions = {"sku-1": _promo(discountPercent="10")}
    cache = _cache(backend, clock)
    await cache.fetch_promotions(["sku-1"])
    result = await cache.fetch_promotions(["sku-1", "sku-2"])

    posts = backend.promotion_posts()
    assert len(posts) == 2
    assert json.loads(posts[1].content) == {"productIds": ["sku-2"], "storeId": "store-1"}
    assert result["sku-1"].id == "promo-1"
    assert result["sku-2"] is None
    # "No promotion" is cached too.
    assert cache.get_cached_promotion("sku-2") is None


@pytest.mark.asyncio
async def test_all_fresh_makes_no_request(backend, clock):
    cache = _cache(backend, clock)
    await cache.fetch_promotions(["sku-1"])
    before = len(backend.promotion_posts())
    assert await cache.fetch_promotions(["sku-1"]) == {"sku-1": None}
    assert len(backend.promotion_posts()) == before


@pytest.mark.asyncio
async def test_failures_resolve_to_empty_map(backend, clock):
    cache = _cache(backend, clock)
    backend.promotions_status = 500
    assert await cache.fetch_promotions(["sku-1"]) == {}
    assert cache.get_cached_promotion("sku-1") is MISS

    backend.promotions_status = 200
    backend.offline = True
    assert await cache.fetch_promotions(["sku-1"]) == {}


@pytest.mark.asyncio
async def test_malformed_body_resolves_to_empty_map(clock):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>")

    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    cache = PromotionCache(SaleTransport(BASE_URL, client=client), store_id="store-1", clock=clock)
    assert await cache.fetch_promotions(["sku-1"]) == {}


@pytest.mark.asyncio
async def test_debounced_calls_coalesce_into_one_batch(backend, clock):
    backend.promotions = {"sku-2": _promo(discountPercent="5")}
    cache = _cache(backend, clock, debounce_s=0.05)
    cache.queue_promotion_fetch("sku-1")
    cache.queue_promotion_fetch("sku-2")
    cache.queue_promotion_fetch("sku-1")
    await cache.flush()

    posts = backend.promotion_posts()
    assert len(posts) == 1
    assert json.loads(posts[0].content)["productIds"] == ["sku-1", "sku-2"]
    assert cache.get_cached_promotion("sku-2").id == "promo-1"


@pytest.mark.asyncio
async def test_batch_sends_csrf_token(backend, clock):
    cache = _cache(backend, clock)
    await cache.fetch_promotions(["sku-1"])
    assert backend.promotion_posts()[0].headers["X-CSRF-Token"] == "csrf-abc"


@pytest.mark.asyncio
async def test_batch_proceeds_without_csrf_token(backend, clock):
    backend.csrf_status = 403
    cache = _cache(backend, clock)
    result = await cache.fetch_promotions(["sku-1"])
    assert result == {"sku-1": None}
    assert "X-CSRF-Token" not in backend.promotion_posts()[0].headers


@pytest.mark.asyncio
async def test_effective_price_rules(backend, clock):
    backend.promotions = {
        "custom": _promo(discountPercent="10", customDiscountPercent="25"),
        "plain": _promo(discountPercent="10"),
        "effective": _promo(effectiveDiscount=20),
        "bundle": _promo(promotionType="bundle", discountPercent="50"),
        "zero": _promo(discountPercent="0"),
        "huge": _promo(customDiscountPercent="150"),
    }
    cache = _cache(backend, clock)
    await cache.fetch_promotions(list(backend.promotions) + ["none"])

    price = Decimal("40.00")
    assert cache.get_effective_price("custom", price).price == Decimal("30.00")
    plain = cache.get_effective_price("plain", price)
    assert (plain.price, plain.has_discount, plain.discount_amount) == (Decimal("36.00"), True, Decimal("4.00"))
    assert cache.get_effective_price("effective", price).price == Decimal("32.00")

    bundle = cache.get_effective_price("bundle", price)
    assert bundle.price == price and not bundle.has_discount and bundle.promotion is None
    zero = cache.get_effective_price("zero", price)
    assert zero.price == price and not zero.has_discount and zero.promotion.id == "promo-1"
    assert cache.get_effective_price("huge", price).price == Decimal("0")
    assert cache.get_effective_price("none", price).price == price
    assert cache.get_effective_price("never-fetched", price).price == price


@pytest.mark.asyncio
async def test_unknown_promotion_fields_are_kept(backend, clock):
    backend.promotions = {"sku-1": _promo(discountPercent="10", bundleBuyQuantity=2)}
    cache = _cache(backend, clock)
    result = await cache.fetch_promotions(["sku-1"])
    assert result["sku-1"].model_dump(by_alias=True)["bundleBuyQuantity"] == 2


@pytest.mark.asyncio
async def test_clear_forgets_everything(backend, clock):
    cache = _cache(backend, clock)
    await cache.fetch_promotions(["sku-1"])
    cache.clear()
    assert cache.get_cached_promotion("sku-1") is MISS


@pytest.mark.asyncio
async def test_cart_reprices_when_batch_lands(backend, clock):
    backend.promotions = {"sku-1": _promo(discountPercent="10")}
    cache = _cache(backend, clock)
    cart = CartEngine(promotions=cache, tax_rate=Decimal("0"))
    cache.on_update = lambda _found: cart.reprice()

    item = cart.add_item(Product(id="sku-1", name="Blender", price=Decimal("100.00")))
    assert item.unit_price == Decimal("100.00")

    await cache.fetch_promotions(["sku-1"])
    assert item.unit_price == Decimal("90.00")
    assert item.list_price == Decimal("100.00")
    assert item.promotion_id == "promo-1"
    assert cart.summary.promotion_discount == Decimal("10.00")
    assert cart.summary.total == Decimal("90.00")
