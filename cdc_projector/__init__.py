"""
cdc-projector: fan a Debezium change stream out into read-optimized stores.

The source database is the only writer of truth. Independent projection
consumers replay its change stream from Kafka into an Elasticsearch index
and a Redis cache, each idempotently and at least once.
"""

__version__ = "1.0.0"
