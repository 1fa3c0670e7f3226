"""
Delivery marketplace — order lifecycle, driver assignment and delivery pricing.
"""
