"""
At-least-once storage event consumer.

Pulls messages from a broker subscription, decodes them into storage
events, dispatches them to registered handlers and acknowledges or
redelivers each message according to the handler outcome.
"""

__version__ = "0.1.0"
