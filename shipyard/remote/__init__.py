"""Remote execution: transports, the Docker runtime, idempotent operations."""

from shipyard.remote.executor import ExecutionOutcome, RemoteExecutor, RetryPolicy
from shipyard.remote.operations import (
    EnsureContainerRunning,
    EnsureContainerStopped,
    EnsureImagePresent,
    EnsureStaleContainerRemoved,
    Operation,
    deploy_operations,
    drain_operations,
)
from shipyard.remote.runtime import ContainerInfo, ContainerRuntime, DockerCli
from shipyard.remote.transport import (
    Channel,
    CommandResult,
    LocalTransport,
    SshTransport,
    Transport,
)

__all__ = [
    "Channel",
    "CommandResult",
    "Transport",
    "LocalTransport",
    "SshTransport",
    "ContainerInfo",
    "ContainerRuntime",
    "DockerCli",
    "Operation",
    "EnsureImagePresent",
    "EnsureStaleContainerRemoved",
    "EnsureContainerRunning",
    "EnsureContainerStopped",
    "deploy_operations",
    "drain_operations",
    "RemoteExecutor",
    "RetryPolicy",
    "ExecutionOutcome",
]
