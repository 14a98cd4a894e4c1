# fastapi_app.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Any

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

# Import local configuration and components
from config import settings
from errors import ClusterError, ConflictError, NotFoundError
from kube_client import ClusterClient, KubeClient
from kube_types import ObjectMeta, PriorityLabelSelector, PriorityName, Rollout, RolloutSpec
from label_selectors import validate as validate_selector
from manager import ControllerManager
from rollout_controller import ROLLOUT_LABEL

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

API_VERSION = f"{settings.CRD_GROUP}/{settings.CRD_VERSION}"

orchestrator_client: Optional[ClusterClient] = None
manager: Optional[ControllerManager] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect to the cluster and start the reconcile loop."""
    global orchestrator_client, manager
    # Don't fail startup if Kubernetes is not reachable; the API reports 503 instead
    try:
        orchestrator_client = KubeClient(
            in_cluster=settings.K8S_IN_CLUSTER,
            context=settings.K8S_CONTEXT,
            group=settings.CRD_GROUP,
            version=settings.CRD_VERSION,
        )
        logger.info("✅ Kubernetes client initialized")
    except Exception as e:
        logger.warning(f"⚠️ Kubernetes client initialization failed: {e}. Some features may not work.")
        orchestrator_client = None

    if orchestrator_client is not None and settings.CONTROLLERS_ENABLED:
        manager = ControllerManager.from_settings(orchestrator_client, settings)
        manager.start()

    yield

    if manager is not None:
        manager.stop()
        manager = None


# -----------------------------------------------------------------------------
# FastAPI app + CORS
# -----------------------------------------------------------------------------
app = FastAPI(title="Node Rollout Orchestrator", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class PriorityNameBody(BaseModel):
    name: str
    priority: int = Field(default=0, description="Larger is more urgent")


class PrioritySelectorBody(BaseModel):
    labelSelector: Dict[str, Any] = Field(..., description="matchLabels / matchExpressions")
    priority: int = Field(default=0, description="Larger is more urgent")

    @field_validator("labelSelector")
    @classmethod
    def check_selector(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        validate_selector(value)
        return value


class RolloutPlan(BaseModel):
    name: str = Field(..., description="NodeRollout name")
    nodeNames: List[PriorityNameBody] = Field(default_factory=list)
    nodeSelectors: List[PrioritySelectorBody] = Field(default_factory=list)

# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_cluster_client() -> ClusterClient:
    if orchestrator_client is None:
        raise HTTPException(status_code=503, detail="Kubernetes client not available")
    return orchestrator_client


def get_manager(client: ClusterClient = Depends(get_cluster_client)) -> ControllerManager:
    if manager is not None:
        return manager
    return ControllerManager.from_settings(client, settings)


def _http_error(action: str, e: ClusterError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=str(e))
    logger.error(f"❌ {action} failed: {e}")
    return HTTPException(status_code=500, detail=f"{action} failed: {e}")

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "healthy"}

@app.get("/api/health")
async def api_health():
    return {
        "status": "healthy",
        "kubernetes": orchestrator_client is not None,
        "controllers": manager is not None,
    }

# -----------------------------------------------------------------------------
# Rollout endpoints
# -----------------------------------------------------------------------------
@app.get("/api/rollouts")
def list_rollouts(client: ClusterClient = Depends(get_cluster_client)) -> List[Dict[str, Any]]:
    try:
        return [r.to_dict(API_VERSION) for r in client.list_rollouts()]
    except ClusterError as e:
        raise _http_error("Listing rollouts", e)

@app.get("/api/rollouts/{name}")
def get_rollout(name: str, client: ClusterClient = Depends(get_cluster_client)) -> Dict[str, Any]:
    try:
        return client.get_rollout(name).to_dict(API_VERSION)
    except ClusterError as e:
        raise _http_error(f"Getting rollout {name}", e)

@app.post("/api/rollouts", status_code=201)
def create_rollout(plan: RolloutPlan, client: ClusterClient = Depends(get_cluster_client)) -> Dict[str, Any]:
    """Create a NodeRollout from node names and label selectors."""
    if not plan.nodeNames and not plan.nodeSelectors:
        raise HTTPException(status_code=400, detail="A rollout needs at least one node name or selector")

    rollout = Rollout(
        metadata=ObjectMeta(name=plan.name),
        spec=RolloutSpec(
            node_names=[PriorityName(name=n.name, priority=n.priority) for n in plan.nodeNames],
            node_selectors=[
                PriorityLabelSelector(label_selector=s.labelSelector, priority=s.priority)
                for s in plan.nodeSelectors
            ],
        ),
    )
    logger.info(f"🚀 Creating rollout {plan.name}: {len(plan.nodeNames)} names, {len(plan.nodeSelectors)} selectors")
    try:
        return client.create_rollout(rollout).to_dict(API_VERSION)
    except ClusterError as e:
        raise _http_error(f"Creating rollout {plan.name}", e)

@app.delete("/api/rollouts/{name}")
def delete_rollout(name: str, client: ClusterClient = Depends(get_cluster_client)) -> Dict[str, Any]:
    try:
        client.delete_rollout(name)
    except ClusterError as e:
        raise _http_error(f"Deleting rollout {name}", e)
    return {"success": True, "message": f"Rollout {name} deleted"}

# -----------------------------------------------------------------------------
# Replacement endpoints
# -----------------------------------------------------------------------------
@app.get("/api/replacements")
def list_replacements(
    rollout: Optional[str] = Query(default=None, description="Only replacements of this rollout"),
    client: ClusterClient = Depends(get_cluster_client),
) -> List[Dict[str, Any]]:
    try:
        items = client.list_replacements()
    except ClusterError as e:
        raise _http_error("Listing replacements", e)
    if rollout:
        items = [r for r in items if r.metadata.labels.get(ROLLOUT_LABEL) == rollout]
    return [r.to_dict(API_VERSION) for r in items]

@app.post("/api/reconcile")
def reconcile_now(mgr: ControllerManager = Depends(get_manager)) -> Dict[str, Any]:
    """Run one reconcile pass immediately."""
    try:
        counts = mgr.try_run_once()
    except ClusterError as e:
        raise _http_error("Reconcile", e)
    if counts is None:
        raise HTTPException(status_code=409, detail="reconcile already running")
    return {"success": True, "reconciled": counts}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.HTTP_PORT)
