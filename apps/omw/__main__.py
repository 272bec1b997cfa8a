"""
Run the OMW Hub API with uvicorn.

Example:
  python -m apps.omw --reload
"""
import os
import sys

import uvicorn


def main() -> None:
    reload = "--reload" in sys.argv[1:] or os.getenv("OMW_RELOAD", "false").lower() == "true"
    host = os.getenv("OMW_HOST", "0.0.0.0")
    port = int(os.getenv("OMW_PORT", os.getenv("PORT", "8000")))
    uvicorn.run(
        "apps.omw.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
