"""
                Takeaway Ordering Backend

Order settlement core for a single-restaurant takeaway platform:
cart pricing, checkout, prepaid wallet, coupons and the order
fulfillment lifecycle.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
