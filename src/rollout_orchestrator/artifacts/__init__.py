"""
Artifact Package
Quantized artifact production and the artifact store it publishes to
"""

from .pipeline import ArtifactPipeline, artifact_key
from .sources import CommandQuantizer, LocalModelSource, ModelSource, Quantizer, UnavailableQuantizer
from .store import ArtifactStore, LocalArtifactStore

__all__ = [
    'ArtifactPipeline',
    'ArtifactStore',
    'CommandQuantizer',
    'LocalArtifactStore',
    'LocalModelSource',
    'ModelSource',
    'Quantizer',
    'UnavailableQuantizer',
    'artifact_key'
]
