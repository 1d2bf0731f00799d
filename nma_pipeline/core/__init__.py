"""Core pipeline engine: hierarchy resolution, storage, processors and orchestration."""
