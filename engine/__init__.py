"""Download queue engine: job store, claim protocol, pipeline stages and worker loop."""
