from dataclasses import asdict

from fastapi import APIRouter

from codeduel.core.errors import NotFoundError
from codeduel.features.problems.cache import ProblemMetadataCache

router = APIRouter(prefix="/v1/problems", tags=["problems"])

_cache = ProblemMetadataCache()


def get_cache() -> ProblemMetadataCache:
    return _cache


@router.get("/{title_slug}")
def problem_metadata(title_slug: str):
    found = get_cache().lookup(title_slug)
    if found is None:
        raise NotFoundError(f"No metadata for problem {title_slug}")
    payload = asdict(found.metadata)
    if payload.get("last_fetched_at") is not None:
        payload["last_fetched_at"] = payload["last_fetched_at"].isoformat()
    return {"problem": payload, "stale": found.stale}
