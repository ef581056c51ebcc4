"""API router subpackage for the ingestion service.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - convert: Synchronous conversion endpoint.
    - jobs: Queue submission and job inspection.
    - uploads: Raw archive upload followed by submission.
    - versions: Dataset versions and their layers.
    - deps: Shared dependency resolvers.
"""
