"""
Redis master election and discovery for the deduplication store.

  RedisConfigurationServer  watches the redis servers, promotes a slave when
                            the master stays unreachable, announces it
  RedisConfigurationClient  applies announcements inside application
                            processes and repoints their dedup stores
"""
