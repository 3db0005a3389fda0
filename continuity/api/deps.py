"""
Supervisor Continuity - API Dependencies
========================================

Shared dependencies for FastAPI endpoints. The service graph lives on
app.state.services and is handed to routes through these providers.
"""

from fastapi import Depends, Request

from continuity.core.fixing.agent import AdaptiveFixAgent
from continuity.core.fixing.learning import FixLearningStore
from continuity.core.fixing.retry_manager import RetryManager
from continuity.core.services import Services
from continuity.core.session.checkpoints import CheckpointManager
from continuity.core.session.event_store import EventStore
from continuity.core.session.heartbeat import HeartbeatMonitor
from continuity.core.session.registry import InstanceRegistry


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_registry(services: Services = Depends(get_services)) -> InstanceRegistry:
    return services.registry


def get_event_store(services: Services = Depends(get_services)) -> EventStore:
    return services.event_store


def get_monitor(services: Services = Depends(get_services)) -> HeartbeatMonitor:
    return services.monitor


def get_checkpoints(services: Services = Depends(get_services)) -> CheckpointManager:
    return services.checkpoints


def get_retry_manager(services: Services = Depends(get_services)) -> RetryManager:
    return services.retry_manager


def get_learning_store(services: Services = Depends(get_services)) -> FixLearningStore:
    return services.learning_store


def get_fix_agent(services: Services = Depends(get_services)) -> AdaptiveFixAgent:
    return services.fix_agent
