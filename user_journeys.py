#!/usr/bin/env python3
"""
🛒 Virtual User Journeys
========================
One simulated browsing session, run to completion:

    Browsing → ViewingProduct (repeat) → [CartAdd → Checkout → Paying →
    Completed | PaymentFailed] | Bounced

Archetypes bias the walk: buyers add to cart and check out, browsers look at
many products and rarely buy, researchers dwell longer per product before
converting or leaving. Browsers and researchers sometimes book a table on
the reservations page. Every step waits a randomized think time.
"""

import asyncio
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Tuple

from api_client import ApiClient, CallResult, EndpointCall
from data_store import DEFAULT_PRODUCTS
from degraded_mode import DegradedMode
from event_sink import EventSink
from fake_data import CustomerProfile, customer_profile, order_payload, reservation_payload
from outcome_recorder import OutcomeRecorder, OutcomeSource
from workload_config import JourneyPattern, TrafficSettings


# =============================================================================
# ARCHETYPES
# =============================================================================

class Archetype(Enum):
    BUYER = "buyer"
    BROWSER = "browser"
    RESEARCHER = "researcher"


@dataclass(frozen=True)
class ArchetypeProfile:
    """Transition probabilities and think times for one archetype."""
    bounce_factor: float                 # scales TrafficSettings.bounce_rate
    view_range: Tuple[int, int]          # product views before deciding
    cart_probability: float              # per product view
    checkout_probability: float          # once the cart is non-empty
    think_range: Tuple[float, float]     # seconds between navigation steps
    view_think_range: Tuple[float, float]
    visits_reservations: float = 0.0
    books_reservation: float = 0.0      # once on the reservations page


ARCHETYPES = {
    Archetype.BUYER: ArchetypeProfile(
        bounce_factor=0.4,
        view_range=(1, 3),
        cart_probability=0.8,
        checkout_probability=0.9,
        think_range=(3.0, 8.0),
        view_think_range=(3.0, 8.0),
    ),
    Archetype.BROWSER: ArchetypeProfile(
        bounce_factor=1.3,
        view_range=(3, 7),
        cart_probability=0.15,
        checkout_probability=0.2,
        think_range=(5.0, 15.0),
        view_think_range=(8.0, 15.0),
        visits_reservations=0.4,
        books_reservation=0.3,
    ),
    Archetype.RESEARCHER: ArchetypeProfile(
        bounce_factor=0.8,
        view_range=(4, 8),
        cart_probability=0.35,
        checkout_probability=0.5,
        think_range=(5.0, 10.0),
        view_think_range=(10.0, 20.0),
        visits_reservations=0.5,
        books_reservation=0.5,
    ),
}

# base weights per journey pattern (buyer, browser, researcher)
PATTERN_WEIGHTS = {
    JourneyPattern.MIXED: (1 / 3, 1 / 3, 1 / 3),
    JourneyPattern.BUYERS: (0.8, 0.1, 0.1),
    JourneyPattern.BROWSERS: (0.1, 0.8, 0.1),
    JourneyPattern.RESEARCHERS: (0.1, 0.1, 0.8),
}

WEIGHT_NOISE = 0.05


def pick_archetype(pattern: JourneyPattern, rng: Optional[random.Random] = None) -> Archetype:
    """Weighted archetype choice; the dominant archetype gets a little noise."""
    rng = rng or random
    weights = [max(0.01, w + rng.uniform(-WEIGHT_NOISE, WEIGHT_NOISE)) for w in PATTERN_WEIGHTS[pattern]]
    return rng.choices(list(Archetype), weights=weights, k=1)[0]


def payment_success_probability(total: float, card_type: str) -> float:
    rate = 0.95
    if total > 100:
        rate -= 0.05
    if total > 200:
        rate -= 0.05
    if card_type == "amex":
        rate -= 0.02
    elif card_type == "discover":
        rate -= 0.01
    return rate


PAYMENT_RETRY_PROBABILITY = 0.6
PAYMENT_RETRY_SUCCESS = 0.7
# transport-level retries for order and reservation POSTs
WRITE_RETRIES = 1


# =============================================================================
# JOURNEY STATE MACHINE
# =============================================================================

class JourneyState(Enum):
    BROWSING = "browsing"
    VIEWING_PRODUCT = "viewing_product"
    CART_ADD = "cart_add"
    CHECKOUT = "checkout"
    PAYING = "paying"
    COMPLETED = "completed"
    PAYMENT_FAILED = "payment_failed"
    BOUNCED = "bounced"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JourneyState.COMPLETED, JourneyState.PAYMENT_FAILED, JourneyState.BOUNCED})

TRANSITIONS = {
    JourneyState.BROWSING: {JourneyState.VIEWING_PRODUCT, JourneyState.BOUNCED},
    JourneyState.VIEWING_PRODUCT: {
        JourneyState.VIEWING_PRODUCT, JourneyState.CART_ADD, JourneyState.CHECKOUT, JourneyState.BOUNCED,
    },
    JourneyState.CART_ADD: {JourneyState.VIEWING_PRODUCT, JourneyState.CHECKOUT, JourneyState.BOUNCED},
    JourneyState.CHECKOUT: {JourneyState.PAYING, JourneyState.BOUNCED},
    JourneyState.PAYING: {JourneyState.COMPLETED, JourneyState.PAYMENT_FAILED},
}


@dataclass
class VirtualUser:
    """A single session. Owned by exactly one running journey task."""
    id: str
    archetype: Archetype
    customer: CustomerProfile
    started_at: float = field(default_factory=time.time)
    current_step: JourneyState = JourneyState.BROWSING
    step_history: List[Tuple[JourneyState, float]] = field(default_factory=list)
    activity: str = "arriving"
    cart: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    planned_steps: int = 0
    finished_at: Optional[float] = None
    order_id: Optional[str] = None
    reservation_id: Optional[str] = None
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if not self.step_history:
            self.step_history.append((self.current_step, self.started_at))

    def advance(self, state: JourneyState):
        if self.current_step.is_terminal:
            raise ValueError(f"{self.id}: journey already ended in {self.current_step.value}")
        if state not in TRANSITIONS[self.current_step]:
            raise ValueError(f"{self.id}: illegal transition {self.current_step.value} -> {state.value}")
        now = time.time()
        self.current_step = state
        self.step_history.append((state, now))
        self.activity = state.value
        if state.is_terminal:
            self.finished_at = now

    @property
    def is_finished(self) -> bool:
        return self.current_step.is_terminal

    @property
    def duration(self) -> float:
        return (self.finished_at or time.time()) - self.started_at

    @property
    def progress(self) -> float:
        if self.is_finished:
            return 1.0
        if not self.planned_steps:
            return 0.0
        return min(0.99, len(self.step_history) / self.planned_steps)

    @property
    def cart_total(self) -> float:
        return round(sum(item["price"] * item["quantity"] for item in self.cart.values()), 2)

    @property
    def cart_items(self) -> int:
        return sum(item["quantity"] for item in self.cart.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "archetype": self.archetype.value,
            "customerName": self.customer.full_name,
            "currentActivity": self.activity,
            "currentStep": self.current_step.value,
            "progress": round(self.progress * 100),
            "startedAt": self.started_at,
            "durationSeconds": round(self.duration, 1),
            "cartItems": self.cart_items,
            "orderId": self.order_id,
            "reservationId": self.reservation_id,
        }


def new_virtual_user(user_id: str, archetype: Archetype, rng: Optional[random.Random] = None) -> VirtualUser:
    return VirtualUser(id=user_id, archetype=archetype, customer=customer_profile(rng))


# =============================================================================
# JOURNEY RUNNER
# =============================================================================

PAGE_LOADS = {
    "/": "/api/health",
    "/menu": "/api/products",
    "/reservations": "/api/reservations",
    "/config": "/api/settings",
}


def is_sellable(product: Dict[str, Any]) -> bool:
    price = product.get("price")
    return (
        isinstance(price, (int, float))
        and not isinstance(price, bool)
        and price == price
        and price > 0
        and isinstance(product.get("name"), str)
    )


class JourneyRunner:
    """
    Walks a VirtualUser through its journey against the real API.

    Every HTTP call is recorded as a traffic outcome. Payment is simulated
    locally, but a collaborator-visible payment outage (DegradedMode) makes
    every attempt decline.
    """

    def __init__(
        self,
        client: ApiClient,
        recorder: OutcomeRecorder,
        sink: EventSink,
        settings: Optional[TrafficSettings] = None,
        catalog: Optional[Callable[[], List[Dict[str, Any]]]] = None,
        degraded: Optional[DegradedMode] = None,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.recorder = recorder
        self.sink = sink
        self.settings = settings or TrafficSettings()
        self.catalog = catalog or (lambda: DEFAULT_PRODUCTS)
        self.degraded = degraded
        self.rng = rng or random.Random()

    async def _think(self, bounds: Tuple[float, float]):
        low, high = bounds
        base = self.rng.uniform(low, high)
        # 10-30% extra for reading and deciding
        delay = base * (1 + self.rng.uniform(0.1, 0.3))
        await asyncio.sleep(delay * self.settings.think_time_scale * self.settings.time_scale)

    async def _call(self, user: VirtualUser, call: EndpointCall, retries: int = 0) -> CallResult:
        headers = {"X-Session-ID": user.id}
        if retries:
            result = await self.client.call_with_retry(
                call, headers, retries=retries, time_scale=self.settings.time_scale, rng=self.rng,
            )
        else:
            result = await self.client.call(call, extra_headers=headers)
        if result.success:
            self.recorder.record_success(OutcomeSource.TRAFFIC, result.latency_ms, result.status_code, call.path)
        else:
            self.recorder.record_error(OutcomeSource.TRAFFIC, result.latency_ms, result.status_code, call.path)
        return result

    async def _page_load(self, user: VirtualUser, page: str) -> CallResult:
        user.activity = f"loading {page}"
        return await self._call(user, EndpointCall("GET", PAGE_LOADS[page]))

    def _plan(self, user: VirtualUser, profile: ArchetypeProfile) -> int:
        views = self.rng.randint(*profile.view_range)
        user.planned_steps = 1 + views + 4
        return views

    async def run(self, user: VirtualUser) -> JourneyState:
        profile = ARCHETYPES[user.archetype]
        views = self._plan(user, profile)

        await self._page_load(user, "/")
        await self._think(profile.think_range)

        if self.rng.random() < min(1.0, self.settings.bounce_rate * profile.bounce_factor):
            user.advance(JourneyState.BOUNCED)
            return user.current_step

        await self._page_load(user, "/menu")
        await self._think(profile.think_range)

        for _ in range(views):
            user.advance(JourneyState.VIEWING_PRODUCT)
            product = self._pick_product()
            if product is not None:
                await self._call(user, EndpointCall("GET", f"/api/products/{product['id']}"))
            await self._think(profile.view_think_range)

            if product is not None and self.rng.random() < profile.cart_probability:
                user.advance(JourneyState.CART_ADD)
                self._add_to_cart(user, product)
                await self._think((1.0, 3.0))

        if profile.visits_reservations and self.rng.random() < profile.visits_reservations:
            await self._page_load(user, "/reservations")
            await self._think(profile.think_range)
            if self.rng.random() < profile.books_reservation:
                await self._book_table(user)

        if not user.cart or self.rng.random() >= profile.checkout_probability:
            user.advance(JourneyState.BOUNCED)
            return user.current_step

        user.advance(JourneyState.CHECKOUT)
        await self._think(profile.think_range)
        user.advance(JourneyState.PAYING)

        if not await self._pay(user):
            user.failure_reason = user.failure_reason or "payment_declined"
            user.advance(JourneyState.PAYMENT_FAILED)
            return user.current_step

        payload = order_payload(user.customer, list(user.cart.values()), user.id, self.rng)
        result = await self._call(user, EndpointCall("POST", "/api/orders", payload), retries=WRITE_RETRIES)
        if not result.success:
            user.failure_reason = result.error or "order_rejected"
            user.advance(JourneyState.PAYMENT_FAILED)
            return user.current_step

        if isinstance(result.response_data, dict):
            user.order_id = result.response_data.get("id")
        self.sink.emit(
            "journey.order_created",
            userId=user.id,
            orderId=user.order_id,
            total=user.cart_total,
            items=user.cart_items,
        )
        user.advance(JourneyState.COMPLETED)
        return user.current_step

    def _pick_product(self) -> Optional[Dict[str, Any]]:
        products = [p for p in self.catalog() if is_sellable(p)]
        return self.rng.choice(products) if products else None

    def _add_to_cart(self, user: VirtualUser, product: Dict[str, Any]):
        quantity = self.rng.randint(1, 3)
        before = user.cart.get(product["id"], {}).get("quantity", 0)
        user.cart[product["id"]] = {
            "id": product["id"],
            "name": product["name"],
            "price": product["price"],
            "quantity": before + quantity,
        }
        self.sink.emit(
            "journey.cart_action",
            userId=user.id,
            action="ADD",
            productId=product["id"],
            quantityBefore=before,
            quantityAfter=before + quantity,
            cartTotal=user.cart_total,
        )

    async def _book_table(self, user: VirtualUser):
        user.activity = "making_reservation"
        await self._think((10.0, 20.0))
        payload = reservation_payload(user.customer, self.rng)
        result = await self._call(user, EndpointCall("POST", "/api/reservations", payload), retries=WRITE_RETRIES)
        if result.success and isinstance(result.response_data, dict):
            user.reservation_id = result.response_data.get("id")
        user.activity = "reservation_confirmed" if result.success else "reservation_failed"
        self.sink.emit(
            "journey.reservation",
            level="info" if result.success else "warning",
            userId=user.id,
            reservationId=user.reservation_id,
            partySize=payload["partySize"],
            date=payload["date"],
            status="confirmed" if result.success else "failed",
            error=result.error,
        )

    async def _pay(self, user: VirtualUser) -> bool:
        total = user.cart_total
        card_type = user.customer.card_type
        gateway_down = self.degraded is not None and self.degraded.payments_failing()

        success = not gateway_down and self.rng.random() < payment_success_probability(total, card_type)
        self._payment_event(user, total, success, retry=0, gateway_down=gateway_down)
        if success:
            return True

        if self.rng.random() < PAYMENT_RETRY_PROBABILITY:
            user.activity = "retrying_payment"
            await self._think((2.0, 4.0))
            gateway_down = self.degraded is not None and self.degraded.payments_failing()
            success = not gateway_down and self.rng.random() < PAYMENT_RETRY_SUCCESS
            self._payment_event(user, total, success, retry=1, gateway_down=gateway_down)
        if gateway_down:
            user.failure_reason = "payment_gateway_unavailable"
        return success

    def _payment_event(self, user: VirtualUser, total: float, success: bool, retry: int, gateway_down: bool):
        self.sink.emit(
            "journey.payment_attempt",
            level="info" if success else "warning",
            userId=user.id,
            transactionId=f"txn-{uuid.uuid4().hex[:12]}",
            amount=total,
            cardType=user.customer.card_type,
            card=user.customer.masked_card,
            status="success" if success else "failed",
            retryAttempt=retry,
            gatewayDown=gateway_down,
        )
