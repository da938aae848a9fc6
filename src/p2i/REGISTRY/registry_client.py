# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Registry client used to check that a base image tag is published.
Talks to the Docker Registry HTTP API V2.
"""

import base64
import json
import socket
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .image_reference import ImageReference
from ..errors import ResolutionError, TransientBuildError
from ..UTILS.log_config import get_logger

logger = get_logger(__name__)

MANIFEST_TYPES = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
    ]
)


@dataclass
class RegistryAuth:
    """Authentication credentials for a registry."""

    username: Optional[str] = None
    password: Optional[str] = None

    def basic(self) -> str:
        raw = f"{self.username}:{self.password}".encode()
        return f"Basic {base64.b64encode(raw).decode()}"


def _is_transient(exc: BaseException) -> bool:
    """Network failures, timeouts, throttling and server errors are worth retrying."""
    if isinstance(exc, HTTPError):
        return exc.code == 429 or exc.code >= 500
    return isinstance(exc, (URLError, socket.timeout, ConnectionError))


class RegistryClient:
    """
    Client for interacting with Docker registries.
    Supports Docker Hub and OCI-compatible registries.
    """

    def __init__(self, attempts: int = 3, timeout: float = 30.0, backoff: float = 1.0):
        """
        Initialize the registry client.

        Args:
            attempts: Tries per request before giving up on transient errors.
            timeout: Socket timeout per request, in seconds.
            backoff: Multiplier for the exponential wait between tries.
        """
        self.attempts = attempts
        self.timeout = timeout
        self.backoff = backoff
        self._auth_tokens: Dict[str, str] = {}
        self._credentials: Dict[str, RegistryAuth] = {}

    def set_credentials(self, registry: str, username: str, password: str) -> None:
        """
        Set credentials for a registry.

        Args:
            registry: Registry hostname (e.g., 'docker.io')
            username: Username
            password: Password or access token
        """
        self._credentials[registry] = RegistryAuth(username=username, password=password)

    def tag_exists(self, ref: ImageReference) -> bool:
        """
        Check whether the registry publishes a manifest for the reference.

        Args:
            ref: Image reference with a tag or digest.

        Returns:
            True if the manifest exists, False if the registry says it does not.

        Raises:
            TransientBuildError: The registry could not be reached after retrying.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self._head_manifest(ref)
        except HTTPError as e:
            if not _is_transient(e):
                raise ResolutionError(f"Registry refused {ref.full_name}: HTTP {e.code}") from e
            raise TransientBuildError(f"Registry error for {ref.full_name}: HTTP {e.code}") from e
        except (URLError, socket.timeout, ConnectionError) as e:
            raise TransientBuildError(f"Cannot reach registry for {ref.full_name}: {e}") from e
        return False

    def _head_manifest(self, ref: ImageReference) -> bool:
        request = Request(ref.manifest_url, method="HEAD")
        request.add_header("Accept", MANIFEST_TYPES)
        token = self._get_auth_token(ref)
        if token:
            request.add_header("Authorization", token)

        try:
            with urlopen(request, timeout=self.timeout) as response:
                logger.debug("Manifest %s: HTTP %s", ref.full_name, response.status)
                return 200 <= response.status < 300
        except HTTPError as e:
            # Docker Hub answers 401 for repositories that do not exist
            if e.code in (401, 404):
                logger.debug("Manifest %s not found: HTTP %s", ref.full_name, e.code)
                return False
            raise

    def _get_auth_token(self, ref: ImageReference) -> Optional[str]:
        """Get authentication header value for a registry."""
        cache_key = f"{ref.registry}/{ref.repository}"
        if cache_key in self._auth_tokens:
            return self._auth_tokens[cache_key]

        if ref.registry == ImageReference.DEFAULT_REGISTRY:
            token = self._get_docker_hub_token(ref)
            if token:
                self._auth_tokens[cache_key] = token
            return token

        creds = self._credentials.get(ref.registry)
        if creds and creds.username and creds.password:
            return creds.basic()
        return None

    def _get_docker_hub_token(self, ref: ImageReference) -> Optional[str]:
        """Get a Docker Hub bearer token, anonymous unless credentials were set."""
        params = {
            "service": "registry.docker.io",
            "scope": f"repository:{ref.repository}:pull",
        }
        request = Request(f"https://auth.docker.io/token?{urlencode(params)}")

        creds = self._credentials.get(ref.registry)
        if creds and creds.username and creds.password:
            request.add_header("Authorization", creds.basic())

        with urlopen(request, timeout=self.timeout) as response:
            data = json.loads(response.read().decode())
        return f"Bearer {data['token']}"
