"""
FastAPI dependency providers

The application builds one JobStore and one SceneSequencer during startup
(see main.lifespan) and keeps them on app.state. Routers receive them
through these providers so tests can swap them with
`app.dependency_overrides`.
"""

from fastapi import Depends, Request

from services.job_store import JobStore
from workers.scene_sequencer import SceneSequencer
from workers.webhook_receiver import WebhookReceiver


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_sequencer(request: Request) -> SceneSequencer:
    return request.app.state.sequencer


def get_webhook_receiver(sequencer: SceneSequencer = Depends(get_sequencer)) -> WebhookReceiver:
    """Receiver bound to the application sequencer and the configured secret."""
    return WebhookReceiver(sequencer)
