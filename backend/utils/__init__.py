"""
Backend utility modules for GrantMatch.
"""

from backend.utils.business_calendar import BillingPeriod, billing_period, business_day_window, utcnow

__all__ = ["BillingPeriod", "billing_period", "business_day_window", "utcnow"]
