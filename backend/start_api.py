#!/usr/bin/env python3
"""
adsync API Startup Script

Starts the FastAPI server (sync triggers, run status, change history).
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the adsync API server."""
    print("Starting adsync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   TOKEN_ENCRYPTION_KEY=<fernet key>")
        print("")

    try:
        uvicorn.run(
            "adsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["adsync"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down adsync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
