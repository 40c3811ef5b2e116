"""Create, reuse and tear down clusters for one test unit."""

from .orchestrator import ClusterLease, acquire_cluster, cluster_name, cluster_spec_for, provision

__all__ = ["ClusterLease", "acquire_cluster", "cluster_name", "cluster_spec_for", "provision"]
