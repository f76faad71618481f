"""
In-memory product and order store.

Stands in for the application's persistent store: the test API serves it,
journeys add orders to it, and the data-corruption scenario mutates it and
puts it back.
"""

import copy
import threading
import time
import uuid
from typing import Optional, List, Dict, Any

DEFAULT_PRODUCTS = [
    {
        "id": "1",
        "name": "Margherita Pizza",
        "description": "Fresh tomato sauce, mozzarella, and basil",
        "price": 18.99,
        "category": "Pizza",
        "available": True,
    },
    {
        "id": "2",
        "name": "Caesar Salad",
        "description": "Crisp romaine lettuce with parmesan and croutons",
        "price": 14.99,
        "category": "Salads",
        "available": True,
    },
    {
        "id": "3",
        "name": "Grilled Salmon",
        "description": "Atlantic salmon with lemon herb seasoning",
        "price": 28.99,
        "category": "Main Course",
        "available": True,
    },
    {
        "id": "4",
        "name": "Chocolate Brownie",
        "description": "Warm chocolate brownie with vanilla ice cream",
        "price": 8.99,
        "category": "Desserts",
        "available": True,
    },
]


class DataStore:
    """Products and orders behind one lock. Readers always get copies."""

    def __init__(self, products: Optional[List[Dict[str, Any]]] = None):
        self._lock = threading.Lock()
        self._products = copy.deepcopy(products if products is not None else DEFAULT_PRODUCTS)
        self._orders: List[Dict[str, Any]] = []
        self._reservations: List[Dict[str, Any]] = []

    def products(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._products)

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for product in self._products:
                if product["id"] == str(product_id):
                    return dict(product)
        return None

    def update_product(self, index: int, **fields):
        with self._lock:
            self._products[index].update(fields)

    def orders(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._orders)

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for order in self._orders:
                if order["id"] == order_id:
                    return copy.deepcopy(order)
        return None

    def add_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(order)
        record.setdefault("id", f"order-{uuid.uuid4().hex[:12]}")
        record.setdefault("createdAt", time.time())
        record.setdefault("status", "pending")
        with self._lock:
            self._orders.append(record)
        return copy.deepcopy(record)

    def update_order(self, index: int, **fields):
        with self._lock:
            self._orders[index].update(fields)

    def reservations(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._reservations)

    def add_reservation(self, reservation: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(reservation)
        record.setdefault("id", f"res-{uuid.uuid4().hex[:10]}")
        with self._lock:
            self._reservations.append(record)
        return copy.deepcopy(record)

    # -------------------------------------------------------------------------
    # snapshot / restore
    # -------------------------------------------------------------------------

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        with self._lock:
            return {
                "products": copy.deepcopy(self._products),
                "orders": copy.deepcopy(self._orders),
            }

    def restore(self, snapshot: Dict[str, List[Dict[str, Any]]]):
        """Put products back and revert orders that existed at snapshot time.

        Orders created after the snapshot are kept as they are.
        """
        saved_orders = {o["id"]: o for o in snapshot.get("orders", [])}
        with self._lock:
            self._products = copy.deepcopy(snapshot["products"])
            for i, order in enumerate(self._orders):
                original = saved_orders.get(order["id"])
                if original is not None:
                    self._orders[i] = copy.deepcopy(original)
