"""Docker client utilities for CrateFlow."""

import os
from typing import List

import docker
from docker import DockerClient
from docker.errors import DockerException
from requests.exceptions import RequestException

from crateflow.config import get_settings
from crateflow.utils import get_logger
from crateflow.utils.exceptions import EngineUnavailableError

logger = get_logger(__name__)


class DockerClientManager:
    """Manages the single Docker client connection of the process."""

    def __init__(self) -> None:
        """Initialize Docker client manager."""
        self._client: DockerClient | None = None
        self.settings = get_settings()

    def candidate_urls(self) -> List[str]:
        """
        Build the ordered list of engine endpoints to try.

        An explicit docker_host wins. Otherwise the local socket is tried when
        it exists, then the network fallback.

        Returns:
            Endpoint URLs in connection order
        """
        if self.settings.docker_host:
            return [self.settings.docker_host]

        urls = []
        if os.path.exists(self.settings.docker_socket_path):
            urls.append(f"unix://{self.settings.docker_socket_path}")
        urls.append(self.settings.docker_fallback_url)
        return urls

    def get_client(self) -> DockerClient:
        """
        Get or create Docker client instance.

        Returns:
            DockerClient instance

        Raises:
            EngineUnavailableError: If no endpoint answers a ping
        """
        if self._client is not None:
            return self._client

        last_error: Exception | None = None
        for url in self.candidate_urls():
            try:
                client = docker.DockerClient(
                    base_url=url, timeout=int(self.settings.engine_timeout_s)
                )
                client.ping()
            except (DockerException, RequestException) as e:
                logger.warning(
                    "Docker endpoint did not answer",
                    extra={"base_url": url, "error": str(e)},
                )
                last_error = e
                continue

            self._client = client
            logger.info(
                "Successfully connected to Docker daemon",
                extra={"base_url": url},
            )
            return client

        logger.error("Failed to connect to Docker daemon", extra={"error": str(last_error)})
        raise EngineUnavailableError(
            f"Container engine is unavailable: {last_error}", last_error
        )

    def close(self) -> None:
        """Close Docker client connection."""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("Docker client connection closed")


# Global instance
_docker_manager: DockerClientManager | None = None


def get_docker_client() -> DockerClient:
    """
    Get global Docker client instance.

    Returns:
        DockerClient instance
    """
    global _docker_manager
    if _docker_manager is None:
        _docker_manager = DockerClientManager()
    return _docker_manager.get_client()


def close_docker_client() -> None:
    """Close global Docker client connection."""
    global _docker_manager
    if _docker_manager:
        _docker_manager.close()
        _docker_manager = None
