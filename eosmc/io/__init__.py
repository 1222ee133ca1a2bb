"""I/O operations for eosmc.

This module provides the chunk store that persists sampler runs and
functions for saving final results.
"""

from eosmc.io.chunk_store import (
    ChunkStore,
    HDF5ChunkStore,
    MemoryChunkStore,
    SampleChunk,
    open_chunk_store,
)
from eosmc.io.json_utils import json_safe, json_serializer
from eosmc.io.result_writers import (
    create_mcmc_summary_dict,
    create_pmc_summary_dict,
    save_mcmc_results,
    save_pmc_results,
    save_point_result,
)

__all__ = [
    # Chunk storage
    "ChunkStore",
    "HDF5ChunkStore",
    "MemoryChunkStore",
    "SampleChunk",
    "open_chunk_store",
    # Result writers
    "create_mcmc_summary_dict",
    "create_pmc_summary_dict",
    "save_mcmc_results",
    "save_pmc_results",
    "save_point_result",
    # JSON utilities
    "json_safe",
    "json_serializer",
]
