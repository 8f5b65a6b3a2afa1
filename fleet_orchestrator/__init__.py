"""Fleet firmware update orchestrator."""
