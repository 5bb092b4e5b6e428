"""
Records shared with the platform API.

The API layer owns creation and validation of these rows; the orchestrator
reads clusters and users and mutates environments and terminal sessions.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from .database import Base
from .services.orchestration.state import EnvironmentStatus, ClusterStatus, SessionStatus


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id, index=True)
    email = Column(String, unique=True, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    account_locked_until = Column(DateTime(timezone=True), nullable=True)  # Set by the login lockout policy

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    environments = relationship("Environment", back_populates="owner")


class Cluster(Base):
    """Kubernetes cluster an environment can be scheduled on."""
    __tablename__ = "clusters"

    id = Column(String, primary_key=True, default=_new_id, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    provider = Column(String, default="ovh")
    region = Column(String, nullable=False, default="default")
    kubeconfig = Column(Text, nullable=False)  # Fernet-encrypted; legacy rows hold plain YAML
    status = Column(String, default=ClusterStatus.ACTIVE.value, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    environments = relationship("Environment", back_populates="cluster")


class Environment(Base):
    """A user workspace: namespace + pod + service + PVC + configmap."""
    __tablename__ = "environments"

    id = Column(String, primary_key=True, default=_new_id, index=True)
    name = Column(String, nullable=False)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    cluster_id = Column(String, ForeignKey("clusters.id"), nullable=False)
    status = Column(String(20), default=EnvironmentStatus.CREATING.value, nullable=False)

    # Container configuration (copied from the template at creation time)
    docker_image = Column(String, nullable=False)
    port = Column(Integer, default=8080, nullable=False)
    resources_cpu = Column(String, default="500m", nullable=False)
    resources_memory = Column(String, default="1Gi", nullable=False)
    resources_storage = Column(String, default="10Gi", nullable=False)
    environment_variables = Column(JSON, default=dict)
    startup_commands = Column(JSON, default=list)
    installation_completed = Column(Boolean, default=False)

    # Cluster resources, recorded once provisioning succeeds
    kubernetes_namespace = Column(String, nullable=True)
    kubernetes_pod_name = Column(String, nullable=True)
    kubernetes_service_name = Column(String, nullable=True)
    external_url = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)  # JSON: {name, message, stack}

    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    owner = relationship("User", back_populates="environments")
    cluster = relationship("Cluster", back_populates="environments")
    terminal_sessions = relationship("TerminalSession", back_populates="environment", cascade="all, delete-orphan")

    @property
    def is_deployed(self) -> bool:
        return bool(self.kubernetes_namespace and self.kubernetes_pod_name)


class TerminalSession(Base):
    """Track terminal WebSocket sessions for audit and activity."""
    __tablename__ = "terminal_sessions"

    id = Column(String, primary_key=True, default=_new_id, index=True)
    environment_id = Column(String, ForeignKey("environments.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String, unique=True, index=True, nullable=False)  # Connection id
    status = Column(String, default=SessionStatus.ACTIVE.value, nullable=False)
    tmux_session_name = Column(String, nullable=True)

    started_at = Column(DateTime(timezone=True), server_default=func.now())
    ended_at = Column(DateTime(timezone=True), nullable=True)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)

    environment = relationship("Environment", back_populates="terminal_sessions")
