"""
Cost metering and budget enforcement engine

Records usage charges against pay-per-use media services, keeps a realtime
per-tenant spend view in Redis, and uses it for admission control and
threshold alerting.
"""

__version__ = "0.1.0"
