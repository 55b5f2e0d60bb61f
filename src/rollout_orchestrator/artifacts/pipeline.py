#!/usr/bin/env python3
"""
Artifact Pipeline
Produces quantized model artifacts, stages them, and atomically publishes them to the artifact store
"""

import asyncio
import hashlib
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Dict, Optional

from ..orchestration.models import ArtifactSpec, ModelArtifact
from ..utils.error_handling import ConfigurationError, StorageError
from ..utils.logging_config import log_performance_metric
from .sources import ModelSource, Quantizer
from .store import ArtifactStore

logger = logging.getLogger("rollout.app")

MANIFEST_NAME = "manifest.json"


def artifact_key(source_model_id: str, method: str, bit_width: int, fingerprint: str) -> str:
    """Deterministic artifact id; a changed source fingerprint yields a different id"""
    material = json.dumps(
        {"source": source_model_id, "method": method, "bits": bit_width, "fingerprint": fingerprint},
        sort_keys=True,
    ).encode()
    return hashlib.sha256(material).hexdigest()[:24]


class ArtifactPipeline:
    """Acquire a base model, quantize it, and publish the result exactly once per key"""

    def __init__(self, store: ArtifactStore, source: ModelSource, quantizer: Quantizer):
        self.store = store
        self.source = source
        self.quantizer = quantizer

    def _final_path(self, artifact_id: str) -> str:
        return f"artifacts/{artifact_id}"

    async def produce(
        self,
        source_model_id: str,
        method: str,
        bit_width: int,
        fingerprint: str
    ) -> ModelArtifact:
        artifact_id = artifact_key(source_model_id, method, bit_width, fingerprint)

        existing = await self.lookup(artifact_id)
        if existing is not None:
            logger.info(f"Reusing published artifact {artifact_id} for {source_model_id} ({method}/{bit_width}bit)")
            return existing

        start_time = time.time()
        files = await self.source.fetch(source_model_id)
        quantized = await self.quantizer.quantize(files, method, bit_width)

        final_uri = self.store.uri_for(self._final_path(artifact_id))
        staging_path = f"staging/{artifact_id}-{uuid.uuid4().hex[:8]}"
        staging_uri = self.store.uri_for(staging_path)

        artifact = ModelArtifact(
            id=artifact_id,
            source_model_id=source_model_id,
            quantization_method=method,
            bit_width=bit_width,
            storage_uri=final_uri,
            created_at=datetime.utcnow(),
            fingerprint=fingerprint,
        )

        try:
            digests: Dict[str, str] = {}
            for name, data in sorted(quantized.items()):
                await self.store.put(data, f"{staging_path}/{name}")
                digests[name] = hashlib.sha256(data).hexdigest()

            # the manifest is written last; its presence under the final path marks completeness
            manifest = {**artifact.to_dict(), "files": digests}
            await self.store.put(json.dumps(manifest, indent=2).encode(), f"{staging_path}/{MANIFEST_NAME}")
            await self.store.publish(staging_uri, final_uri)
        except (Exception, asyncio.CancelledError):
            try:
                await self.store.delete(staging_uri)
            except StorageError as cleanup_error:
                logger.warning(f"Failed to remove staged artifact {staging_uri}: {cleanup_error}")
            raise

        published = await self.lookup(artifact_id)
        log_performance_metric(
            operation="artifact_produce",
            duration_ms=round((time.time() - start_time) * 1000, 2),
            artifact_id=artifact_id,
            file_count=len(quantized),
        )
        logger.info(f"Published artifact {artifact_id} at {final_uri}")
        return published or artifact

    async def produce_from_spec(self, spec: ArtifactSpec) -> ModelArtifact:
        if spec.artifact_id:
            return await self.resolve(spec.artifact_id)
        return await self.produce(spec.source_model_id, spec.quantization_method, spec.bit_width, spec.fingerprint)

    async def lookup(self, artifact_id: str) -> Optional[ModelArtifact]:
        """Published artifact for the id, or None if it was never completely published"""
        manifest_uri = self.store.uri_for(f"{self._final_path(artifact_id)}/{MANIFEST_NAME}")
        if not await self.store.exists(manifest_uri):
            return None

        manifest = json.loads(await self.store.get(manifest_uri))
        manifest.pop("files", None)
        return ModelArtifact.from_dict(manifest)

    async def resolve(self, artifact_id: str) -> ModelArtifact:
        artifact = await self.lookup(artifact_id)
        if artifact is None:
            raise ConfigurationError(f"Unknown or unpublished artifact: {artifact_id}")
        return artifact

    async def verify(self, artifact_id: str) -> bool:
        """Check every published file against the manifest digests"""
        final_path = self._final_path(artifact_id)
        manifest_uri = self.store.uri_for(f"{final_path}/{MANIFEST_NAME}")
        if not await self.store.exists(manifest_uri):
            return False

        manifest = json.loads(await self.store.get(manifest_uri))
        for name, digest in manifest.get("files", {}).items():
            data = await self.store.get(self.store.uri_for(f"{final_path}/{name}"))
            if hashlib.sha256(data).hexdigest() != digest:
                logger.error(f"Artifact {artifact_id} file {name} does not match its manifest digest")
                return False
        return True
