"""API router package."""

from fastapi import APIRouter

from clusterhub.api.v1 import chats, clusters, health, messages, notifications, projects, tasks

router = APIRouter()

# Include all API routers
router.include_router(health.router, tags=["Health"])
router.include_router(chats.router, prefix="/chats", tags=["Chats"])
router.include_router(messages.router, prefix="/messages", tags=["Messages"])
router.include_router(clusters.router, prefix="/clusters", tags=["Clusters"])
router.include_router(projects.router, prefix="/projects", tags=["Projects"])
router.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])
router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
