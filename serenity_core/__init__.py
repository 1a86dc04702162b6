"""
Serenity Webhook Engine
=======================

Outbound webhook delivery for the Insight Serenity platform.

This package provides:
- Subscription registration and event matching
- Signed HTTP delivery with payload transformation
- Rate limiting, circuit breaking and retry with backoff
- Health tracking, statistics and an administrative API
"""

__version__ = "1.0.0"
