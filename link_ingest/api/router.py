from fastapi import APIRouter

from link_ingest.api.routes import health, jobs, links, profiles

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(profiles.router, prefix="/profiles", tags=["profiles"])
api_router.include_router(links.router, prefix="/links", tags=["links"])
