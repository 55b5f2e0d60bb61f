"""
Deployment Package
Cluster orchestration clients, the deployment controller and the reconciler
"""

from .cleanup import Reconciler
from .cluster import ClusterAPI, DeploymentStatus, HTTPClusterAPI, InMemoryClusterAPI, TrackSpec
from .controller import DeploymentController, TrackStatus

__all__ = [
    'ClusterAPI',
    'DeploymentController',
    'DeploymentStatus',
    'HTTPClusterAPI',
    'InMemoryClusterAPI',
    'Reconciler',
    'TrackSpec',
    'TrackStatus'
]
