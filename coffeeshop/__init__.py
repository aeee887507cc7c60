"""
Coffeeshop product service.

Transactional product mutations with asynchronous side effects (object
storage, outbound mail) delivered through a retrying task queue.
"""

__version__ = "0.1.0"
