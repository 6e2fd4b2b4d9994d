"""
Build a LogServer container bundle from a Docker registry.

The bundle is a zip archive with, for each image:

    <image>/<tag>.json            image manifest
    <image>/<config-digest>.json  container config
    <image>/image.json            {"image": "<host><path>/<image>:<tag>"}
    <image>/<layer-digest>.tar.gz one entry per layer
"""

import json
import logging
import os
import zipfile
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlparse

import requests

from sdpctl.context import RunContext
from sdpctl.errors import NotFoundError, TransportError
from sdpctl.retry import Classification, RetryPolicy, retry

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "https://public.ecr.aws/appgate-sdp"
LOGSERVER_IMAGES = ("cz-opensearch", "cz-opensearchdashboards")
MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"
PUBLIC_ECR_HOST = "public.ecr.aws"

REGISTRY_POLICY = RetryPolicy(0.5, 1.5, 0.5, 60.0, 15 * 60)
LAYER_CHUNK_SIZE = 1024 * 1024


class RegistryError(TransportError):
    """A registry request answered with an unexpected status."""


def _classify(exc: BaseException) -> Classification:
    if isinstance(exc, NotFoundError):
        return Classification.PERMANENT
    if isinstance(exc, TransportError):
        return Classification.RETRYABLE
    return Classification.PERMANENT


def bundle_name(tag: str) -> str:
    return f"logserver-{tag}.zip"


class RegistryBundler:
    """Downloads images from a registry and packs them into a bundle zip."""

    def __init__(
        self,
        registry: str = DEFAULT_REGISTRY,
        environ: Optional[Mapping[str, str]] = None,
        session: Optional[requests.Session] = None,
        ctx: Optional[RunContext] = None,
        policy: RetryPolicy = REGISTRY_POLICY,
    ):
        environ = os.environ if environ is None else environ
        parsed = urlparse(registry if "://" in registry else f"https://{registry}")
        self.scheme = parsed.scheme
        self.host = parsed.netloc
        self.path = parsed.path.rstrip("/")
        self.username = environ.get("SDPCTL_DOCKER_REGISTRY_USERNAME", "")
        self.password = environ.get("SDPCTL_DOCKER_REGISTRY_PASSWORD", "")
        self.session = session or requests.Session()
        self.ctx = ctx or RunContext()
        self.policy = policy

    def _v2_url(self, image: str, kind: str, ref: str) -> str:
        path = self.path if self.path.startswith("/v2") else f"/v2{self.path}"
        return f"{self.scheme}://{self.host}{path}/{image}/{kind}/{ref}"

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": MANIFEST_MEDIA_TYPE, "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _auth(self):
        if self.username and self.password:
            return (self.username, self.password)
        return None

    def _get(self, url: str, token: Optional[str], stream: bool = False) -> requests.Response:
        def op() -> requests.Response:
            try:
                res = self.session.get(
                    url,
                    headers=self._headers(token),
                    auth=self._auth(),
                    timeout=300,
                    stream=stream,
                )
            except requests.exceptions.RequestException as e:
                raise TransportError(f"GET {url}: {e}") from e
            if res.status_code == 404:
                raise NotFoundError(404, f"image bundle not found: {url}")
            if res.status_code != 200:
                raise RegistryError(f"GET {url}: received {res.status_code} status")
            return res

        return retry(self.policy, op, _classify, self.ctx)

    def public_ecr_token(self, images: List[str]) -> Optional[str]:
        """Anonymous pull token for public ECR. Other registries return None."""
        if self.host != PUBLIC_ECR_HOST:
            return None
        params = [("service", PUBLIC_ECR_HOST)]
        for image in images:
            params.append(("scope", f"repository:appgate-sdp/{image}:pull"))
        try:
            res = self.session.get(
                f"https://{PUBLIC_ECR_HOST}/token/", params=params, timeout=60
            )
            res.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise TransportError(f"failed to get public ECR token: {e}") from e
        return res.json().get("token")

    def build(self, path: str, tag: str, images=LOGSERVER_IMAGES) -> str:
        """
        Download every image at tag into a new zip archive at path.

        Returns:
            The archive path
        """
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        token = self.public_ecr_token(list(images))
        logger.info(f"Downloading image layers for {os.path.basename(path)}")
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
            for image in images:
                self._add_image(zf, image, tag, token)
        return path

    def _add_image(self, zf: zipfile.ZipFile, image: str, tag: str, token: Optional[str]) -> None:
        manifest_res = self._get(self._v2_url(image, "manifests", tag), token)
        manifest = manifest_res.json()
        zf.writestr(f"{image}/{tag}.json", manifest_res.content)

        config_digest = manifest["config"]["digest"]
        config_res = self._get(self._v2_url(image, "blobs", config_digest), token)
        zf.writestr(
            f"{image}/{config_digest.replace('sha256:', '', 1)}.json", config_res.content
        )

        image_ref = {"image": f"{self.host}{self.path}/{image}:{tag}"}
        zf.writestr(f"{image}/image.json", json.dumps(image_ref))

        for layer in manifest.get("layers", []):
            digest = layer["digest"]
            layer_hash = digest.replace("sha256:", "", 1)
            logger.info(f"Downloading image layer {layer_hash[:12]} of {image}")
            url = self._v2_url(image, "blobs", digest)
            layer_res = self._get(url, token, stream=True)
            written = 0
            try:
                with zf.open(f"{image}/{layer_hash}.tar.gz", "w", force_zip64=True) as dst:
                    for chunk in layer_res.iter_content(chunk_size=LAYER_CHUNK_SIZE):
                        dst.write(chunk)
                        written += len(chunk)
            except requests.exceptions.RequestException as e:
                raise TransportError(f"GET {url}: {e}") from e
            finally:
                layer_res.close()
            logger.debug(f"Wrote layer {layer_hash} ({written} bytes)")
