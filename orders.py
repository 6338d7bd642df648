# orders.py - purchase records keyed by the platform order id
import logging
from typing import Optional

from models import Order
from storage import DeliveryStore

log = logging.getLogger("orders")


class OrderStore:
    def __init__(self, store: DeliveryStore):
        self.store = store

    def upsert(self, order: Order) -> bool:
        """Insert if absent; the first write wins on conflicting duplicates."""
        created = self.store.insert_order(order)
        if not created:
            log.info("Order %s already recorded; keeping the original", order.id)
        return created

    def get(self, order_id: int) -> Optional[Order]:
        return self.store.get_order(order_id)

    def owned_by(self, order_id: int, customer_id: int) -> Optional[Order]:
        """The order, only if it belongs to `customer_id`.

        A missing order and someone else's order both come back as None.
        """
        order = self.get(order_id)
        if order is None or order.customer_id is None:
            return None
        if int(order.customer_id) != int(customer_id):
            return None
        return order
