"""
                Restaurant Ordering Backend

Order lifecycle over menu stock, wallet balances and coupon redemptions,
kept consistent under concurrent requests.

Author: Khalil Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil Bannouri"
