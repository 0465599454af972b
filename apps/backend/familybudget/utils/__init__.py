"""
Utils package
"""

from .merchant_detection import (
    classify,
    delivery_service_name,
    is_food_delivery,
    is_likely_subscription,
    match_subscription,
)

__all__ = [
    "classify",
    "delivery_service_name",
    "is_food_delivery",
    "is_likely_subscription",
    "match_subscription",
]
