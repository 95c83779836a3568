import sys
import os
import uvicorn

if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

if __name__ == "__main__":
    host = os.environ.get("ECHO_HOST", "localhost")
    port = int(os.environ.get("ECHO_PORT", "10000"))
    reload = os.environ.get("ECHO_RELOAD", "").lower() in ("1", "true", "yes")
    uvicorn.run(
        "echo_chat.server:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["echo_chat"] if reload else None,
        log_level=os.environ.get("ECHO_LOG_LEVEL", "info"),
    )
