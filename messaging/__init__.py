"""
Messaging layer: topology registration, handlers, publisher, subscriber
and the Client facade tying them together.
"""
