#!/usr/bin/env python3
"""
🧾 Cart Checkout Simulator
==========================
A bounded batch of server-side orders. Each order builds a cart for a fresh
Faker customer, walks the payment steps and posts the order to /api/orders,
emitting the same cart/payment events a virtual buyer would.

- `orderCount` orders, `delayBetweenOrdersMs` apart, then it stops on its own
- ~90% of payments succeed; only paid orders are posted
- A failing order is counted and the batch carries on
"""

import asyncio
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable

from api_client import ApiClient, EndpointCall
from data_store import DEFAULT_PRODUCTS
from event_sink import EventSink
from fake_data import CustomerProfile, customer_profile, order_payload
from outcome_recorder import OutcomeRecorder, OutcomeSource
from user_journeys import WRITE_RETRIES, is_sellable
from workload_config import CheckoutSimulatorConfig
from workload_errors import AlreadyRunning, WorkloadError

PAYMENT_SUCCESS_RATE = 0.9
SIMULATOR_HEADER = {"X-Simulator-Source": "cart-checkout-simulator"}


def _jitter(base: float, spread: float, rng) -> float:
    return base * (1 + rng.uniform(-spread, spread))


@dataclass
class CheckoutRunState:
    session_id: str
    config: CheckoutSimulatorConfig
    time_scale: float = 1.0
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    orders_created: int = 0
    orders_successful: int = 0
    orders_failed: int = 0
    current_order: str = ""

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    @property
    def seconds_remaining(self) -> float:
        if self.finished:
            return 0.0
        remaining = max(self.config.order_count - self.orders_created, 0)
        return remaining * self.config.delay_between_orders_ms / 1000

    def stats(self) -> Dict[str, Any]:
        return {
            "ordersCreated": self.orders_created,
            "ordersSuccessful": self.orders_successful,
            "ordersFailed": self.orders_failed,
            "currentOrder": self.current_order,
            "timeRemaining": self.seconds_remaining,
        }


class CheckoutSimulator:
    """At most one batch at a time; orders are recorded as traffic outcomes."""

    def __init__(
        self,
        client: ApiClient,
        recorder: OutcomeRecorder,
        sink: EventSink,
        catalog: Optional[Callable[[], List[Dict[str, Any]]]] = None,
        time_scale: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.recorder = recorder
        self.sink = sink
        self.catalog = catalog or (lambda: DEFAULT_PRODUCTS)
        self.time_scale = time_scale
        self.rng = rng or random.Random()

        self._lock = threading.Lock()
        self._run: Optional[CheckoutRunState] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._run is not None and not self._run.finished

    def start(self, config: CheckoutSimulatorConfig) -> Dict[str, Any]:
        if not isinstance(config, CheckoutSimulatorConfig):
            raise WorkloadError("start() needs a CheckoutSimulatorConfig", code="invalid_config")
        with self._lock:
            if self._run is not None and not self._run.finished:
                raise AlreadyRunning(self._run.session_id, what="A checkout simulation")
            run = CheckoutRunState(
                session_id=f"cart-sim-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}",
                config=config,
                time_scale=self.time_scale,
            )
            self._run = run
            self._task = asyncio.create_task(self._run_batch(run))

        self.sink.emit("checkout_simulator.start", sessionId=run.session_id, **config.to_dict())
        return {"sessionId": run.session_id, "config": config.to_dict()}

    def stop(self) -> Dict[str, Any]:
        """Stop after nothing else is posted. Safe no-op when idle."""
        with self._lock:
            run = self._run
            if run is None or run.finished:
                return self.get_status()
            self._finish(run, naturally=False)
            task = self._task
        if task is not None and not task.done():
            task.cancel()
        return self.get_status()

    async def shutdown(self):
        self.stop()
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            run = self._run
            if run is None:
                return {"isRunning": False, "sessionId": None, "config": None, "stats": None, "duration": 0}
            end = run.finished_at if run.finished else time.monotonic()
            return {
                "isRunning": not run.finished,
                "sessionId": run.session_id,
                "config": run.config.to_dict(),
                "stats": run.stats(),
                "duration": round((end - run.started_at) / run.time_scale, 1),
            }

    # =========================================================================
    # BATCH
    # =========================================================================

    async def _run_batch(self, run: CheckoutRunState):
        delay = run.config.delay_between_orders_ms / 1000 * self.time_scale
        for i in range(run.config.order_count):
            if i:
                await asyncio.sleep(delay)
            if run.finished:
                return
            try:
                success = await self._one_order(run)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.sink.emit("engine.internal_fault", level="error", loop="checkout", error=repr(e))
                success = False
            with self._lock:
                if run.finished:
                    return
                run.orders_created += 1
                if success:
                    run.orders_successful += 1
                else:
                    run.orders_failed += 1

        with self._lock:
            if not run.finished:
                self._finish(run, naturally=True)

    def _finish(self, run: CheckoutRunState, naturally: bool):
        run.finished_at = time.monotonic()
        created = run.orders_created
        self.sink.emit(
            "checkout_simulator.complete",
            sessionId=run.session_id,
            stoppedManually=not naturally,
            successRate=round(run.orders_successful / created * 100, 1) if created else 0,
            **run.stats(),
        )

    async def _one_order(self, run: CheckoutRunState) -> bool:
        customer = customer_profile(self.rng)
        with self._lock:
            run.current_order = customer.full_name

        cart = await self._fill_cart(run, customer)
        if not cart:
            return False
        total = round(sum(item["price"] * item["quantity"] for item in cart), 2)
        order_id = f"simulator-order-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"

        self._payment_event(run, customer, order_id, total, "initiated")
        await asyncio.sleep(_jitter(1.0, 0.3, self.rng) * self.time_scale)
        self._payment_event(run, customer, order_id, total, "processing")
        await asyncio.sleep(_jitter(3.0, 0.5, self.rng) * self.time_scale)

        if self.rng.random() >= PAYMENT_SUCCESS_RATE:
            self._payment_event(run, customer, order_id, total, "failed")
            return False
        self._payment_event(run, customer, order_id, total, "success")

        payload = order_payload(customer, cart, run.session_id, self.rng)
        if run.config.order_type != "random":
            payload["orderType"] = run.config.order_type
        call = EndpointCall("POST", "/api/orders", payload, name="simulated order")
        result = await self.client.call_with_retry(
            call, SIMULATOR_HEADER, retries=WRITE_RETRIES, time_scale=self.time_scale, rng=self.rng,
        )
        if result.success:
            self.recorder.record_success(OutcomeSource.TRAFFIC, result.latency_ms, result.status_code, call.path)
        else:
            self.recorder.record_error(OutcomeSource.TRAFFIC, result.latency_ms, result.status_code, call.path)
            return False

        self.sink.emit(
            "journey.order_created",
            source="checkout_simulator",
            sessionId=run.session_id,
            orderId=result.response_data.get("id") if isinstance(result.response_data, dict) else order_id,
            total=total,
            items=sum(item["quantity"] for item in cart),
        )
        return True

    async def _fill_cart(self, run: CheckoutRunState, customer: CustomerProfile) -> List[Dict[str, Any]]:
        products = [p for p in self.catalog() if is_sellable(p)]
        picked = self.rng.sample(products, min(len(products), self.rng.randint(1, 4)))
        cart = []
        running_total = 0.0
        for product in picked:
            quantity = self.rng.randint(1, 3)
            cart.append({"id": product["id"], "name": product["name"], "price": product["price"], "quantity": quantity})
            running_total = round(running_total + product["price"] * quantity, 2)
            self.sink.emit(
                "journey.cart_action",
                source="checkout_simulator",
                sessionId=run.session_id,
                customer=customer.full_name,
                action="ADD",
                productId=product["id"],
                quantityBefore=0,
                quantityAfter=quantity,
                cartTotal=running_total,
            )
            await asyncio.sleep(_jitter(0.5, 0.3, self.rng) * self.time_scale)
        return cart

    def _payment_event(self, run: CheckoutRunState, customer: CustomerProfile, order_id: str, total: float, status: str):
        self.sink.emit(
            "journey.payment_attempt",
            level="warning" if status == "failed" else "info",
            source="checkout_simulator",
            sessionId=run.session_id,
            orderId=order_id,
            amount=total,
            cardType=customer.card_type,
            card=customer.masked_card,
            status=status,
        )
