#!/usr/bin/env python3
"""
Back-office API startup wrapper.
"""
import os
import sys

# Add workspace to path
workspace_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, workspace_root)

if __name__ == "__main__":
    import uvicorn

    print("[Backoffice] Starting billing API on http://localhost:8000")
    try:
        uvicorn.run(
            "backoffice.main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backoffice] Shutting down...")
        sys.exit(0)
