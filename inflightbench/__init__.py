"""
MQTT v5 inflight-delivery and shared-subscription verification harness.

Drives many persistent-session subscribers and numbered publishers against a
broker, injects disconnect/reconnect faults mid-run and checks that every
message arrived (and, for shared subscriptions, arrived exactly once).
"""

__version__ = "0.3.0"
