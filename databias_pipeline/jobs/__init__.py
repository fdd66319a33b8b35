"""Job queue, analysis orchestration and worker processes."""
