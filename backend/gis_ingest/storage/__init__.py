"""Object storage adapters for raw archives and converted layers.

Re-exports nothing; import ``gis_ingest.storage.blobs`` for the
BlobStoreProtocol, its implementations and the get_blob_store factory.
"""
