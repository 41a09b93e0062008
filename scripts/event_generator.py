import random
from datetime import datetime, timezone

from faker import Faker


fake = Faker()

ROLES = ["buyer", "seller", "admin"]
PRODUCT_EVENT_TYPES = ["product_created", "product_updated", "product_deleted"]
ORDER_EVENT_TYPES = ["order_placed", "order_updated", "order_deleted"]


def generate_user(index: int, role=None):
    """Generate a single user projection for the user_data_sync queue."""
    return {
        "id": f"U{index:04d}",
        "username": fake.user_name(),
        "email": fake.email(),
        "role": role or random.choice(ROLES),
    }


def generate_product_event(seller_id: str, event_type=None):
    """Generate a product lifecycle event envelope."""
    return {
        "type": event_type or random.choice(PRODUCT_EVENT_TYPES),
        "data": {
            "title": fake.catch_phrase(),
            "description": fake.sentence(nb_words=12),
            "price": round(random.uniform(5, 500), 2),
            "quantity": random.randint(1, 100),
            "category": fake.word(),
            "seller": {"id": seller_id},
            "createdAt": datetime.now(timezone.utc).isoformat(),
        },
    }


def generate_order_event(buyer_id: str, seller_ids, event_type=None):
    """Generate an order event envelope with one line item per seller id."""
    product_ids = [f"P{random.randint(1, 9999):04d}" for _ in seller_ids]
    return {
        "type": event_type or random.choice(ORDER_EVENT_TYPES),
        "data": {
            "userId": buyer_id,
            "sellerIds": list(seller_ids),
            "productIds": product_ids,
            "titles": [fake.catch_phrase() for _ in seller_ids],
            "quantities": [random.randint(1, 5) for _ in seller_ids],
            # Leave some products without a stock record
            "remainingQuantities": [
                {"productId": pid, "remainingQuantity": random.randint(0, 50)}
                for pid in product_ids
                if random.random() < 0.8
            ],
        },
    }


def generate_user_created_event(user_id: str):
    """Generate an auth event envelope for a new account."""
    return {"type": "user_created", "data": {"userId": user_id}}
