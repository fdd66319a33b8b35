"""Package marker for deployment.

Ensures `uvicorn databias_pipeline.main:app` and the `databias-worker`
entrypoint can import the pipeline when running from the repository root.
"""
