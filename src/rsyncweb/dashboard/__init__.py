"""rsync-web dashboard - HTTP and streaming interface.

This module provides a FastAPI-based API for:
- Submitting and cancelling synchronization jobs
- Querying and pruning job history
- Streaming live job output over SSE or WebSocket

Usage:
    from rsyncweb.dashboard import create_app

    app = create_app(ServerConfig(work_dir="/srv/data"))
    # Run with uvicorn: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from rsyncweb.dashboard.app import create_app

__all__ = ["create_app"]
