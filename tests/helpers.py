"""Test data builders."""
from stockroom.schemas.order import OrderCreate


def make_order_payload(*items, email="shopper@example.com", total=None, **extra) -> dict:
    """Build an order submission from (product_id, quantity, unit_price) tuples."""
    lines = [
        {"product_id": product_id, "product_name": f"Product {product_id}", "quantity": quantity, "unit_price": price}
        for product_id, quantity, price in items
    ]
    payload = {
        "customer_email": email,
        "customer_name": "Test Shopper",
        "items": lines,
        "total_amount": total if total is not None else sum(q * p for _, q, p in items),
        "shipping_address": {"line1": "1 Main St", "city": "Springfield", "postal_code": "12345"},
    }
    payload.update(extra)
    return payload


def make_order(*items, **kwargs) -> OrderCreate:
    return OrderCreate.model_validate(make_order_payload(*items, **kwargs))
