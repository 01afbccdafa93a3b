"""
Utility modules for DocVec.

This package contains:
- gpu_status: free accelerator memory probe used by the accelerator guard
"""

from utils.gpu_status import AcceleratorStatus, probe_accelerator, query_free_accelerator_memory

__all__ = ["AcceleratorStatus", "probe_accelerator", "query_free_accelerator_memory"]
