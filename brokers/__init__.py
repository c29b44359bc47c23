"""
Brokers — One connection object per broker server.

Publishing and subscribing fan out over several independent broker
servers; each server is reached through a Broker:
- Redis Streams (production), one redis instance per broker server
- In-memory asyncio queues (development, tests)
"""
