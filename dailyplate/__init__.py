"""DailyPlate: food-delivery storefront backend with capacity-limited daily
ordering and payment-status reconciliation."""

__version__ = "0.1.0"
