import logging
from datetime import datetime
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from packages.nebula.config import Settings
from packages.nebula.models import DeploymentStatusEnum
from packages.nebula.pipeline import BatchRunner
from packages.nebula.repository import InvalidTransitionError, NotFoundError
from packages.nebula.services import Services, build_services


logger = logging.getLogger(__name__)


class CrawlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: Optional[int] = Field(default=None, alias="siteId")


class DeployHookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deployment_id: int = Field(alias="deploymentId")
    site_url: str = Field(alias="siteUrl")
    pr_number: Optional[int] = Field(default=None, alias="prNumber")
    repository: Optional[str] = None
    owner: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _site_overview(services: Services, site_id: int) -> Dict[str, Any]:
    overview = services.store.get_site_overview(site_id)
    site = overview.site
    return {
        "id": site.id,
        "url": site.url,
        "name": site.name,
        "planTier": site.plan_tier,
        "autoMerge": site.auto_merge,
        "isActive": site.is_active,
        "competitors": [
            {"id": c.id, "url": c.url, "name": c.name, "isActive": c.is_active}
            for c in overview.competitors
        ],
        "recentCrawls": [
            {
                "id": c.id,
                "url": c.url,
                "title": c.title,
                "statusCode": c.status_code,
                "performanceScore": c.performance_score,
                "crawledAt": _iso(c.crawled_at),
            }
            for c in overview.recent_crawls
        ],
        "recentOpportunities": [
            {
                "id": o.id,
                "title": o.title,
                "type": o.type,
                "priority": o.priority,
                "revenueDelta": o.revenue_delta,
                "confidence": o.confidence,
                "status": o.status,
                "createdAt": _iso(o.created_at),
            }
            for o in overview.recent_opportunities
        ],
        "recentDeployments": [
            {
                "id": d.id,
                "opportunityId": d.opportunity_id,
                "prNumber": d.pr_number,
                "prUrl": d.pr_url,
                "status": d.status,
                "beforeScore": d.before_score,
                "afterScore": d.after_score,
                "performanceDelta": d.performance_delta,
                "createdAt": _iso(d.created_at),
            }
            for d in overview.recent_deployments
        ],
        "usage": services.store.get_usage_stats(site_id),
    }


def create_app(
    settings: Optional[Settings] = None, services: Optional[Services] = None
) -> FastAPI:
    if services is None:
        services = build_services(settings or Settings.from_env())
    runner = BatchRunner(services)
    gate = services.deployment_gate()

    app = FastAPI(title="Nebula Growth Agent API", version="0.1.0")
    app.state.services = services
    app.state.runner = runner

    @app.get("/health")
    async def health() -> JSONResponse:
        try:
            with services.store.session() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Health check failed")
            return JSONResponse(
                {"status": "unhealthy", "timestamp": datetime.utcnow().isoformat()},
                status_code=503,
            )
        return JSONResponse({"status": "healthy", "timestamp": datetime.utcnow().isoformat()})

    @app.post("/crawl")
    async def crawl(payload: Optional[CrawlRequest] = None) -> JSONResponse:
        site_id = payload.site_id if payload else None
        try:
            summary = await runner.run_batch(site_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return JSONResponse({"success": True, "results": summary.to_dict()})

    @app.post("/deploy-hook")
    async def deploy_hook(payload: DeployHookRequest) -> JSONResponse:
        try:
            outcome = await gate.run(
                payload.deployment_id,
                payload.site_url,
                pr_number=payload.pr_number,
                repository=payload.repository,
                owner=payload.owner,
            )
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc))

        # An audit that could not run is an upstream failure, not a gate decision.
        status_code = 502 if outcome.status == DeploymentStatusEnum.FAILED else 200
        return JSONResponse(outcome.to_response(), status_code=status_code)

    @app.get("/sites/{site_id}")
    async def get_site(site_id: int) -> JSONResponse:
        try:
            return JSONResponse(_site_overview(services, site_id))
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))

    return app


def main() -> None:
    import uvicorn

    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
