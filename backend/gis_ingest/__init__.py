"""GIS ingestion service for the country-metadata dashboard.

Uploaded boundary archives (zipped shapefiles, GeoJSON, TopoJSON) are
converted and simplified into GeoJSON, their features are loaded into
PostgreSQL/PostGIS, and the country's active dataset version is switched
over atomically.

- Submission runs a conversion inline or queues it for a worker
- Workers claim queued jobs under a renewable lease
- One pipeline core serves both paths: fetch, extract, convert, load, publish
- At most one dataset version per country is active at any instant

See module docstrings for details on each stage.
"""
