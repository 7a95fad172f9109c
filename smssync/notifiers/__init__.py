"""Live delivery of new messages to subscribers."""

from smssync.notifiers.fanout import FanoutChannel, MessageCallback, Subscription

__all__ = ["FanoutChannel", "MessageCallback", "Subscription"]
