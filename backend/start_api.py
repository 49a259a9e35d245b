#!/usr/bin/env python3
"""
SEO Dashboard API Startup Script

Starts the FastAPI server with auto-reload for local development.
"""

import uvicorn
import sys
from pathlib import Path


def main():
    """Start the SEO Dashboard API server."""
    print("Starting SEO Dashboard API server...")
    print("   Google Ads / GA4 integrations, Stripe billing analytics, DataForSEO usage")
    print("")
    print("Documentation will be available at:")
    print("   Swagger UI:  http://localhost:5000/docs")
    print("   ReDoc:       http://localhost:5000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Run `python generate_keys.py` to create one from .env.template.")
        print("")

    try:
        uvicorn.run(
            "app.main:app",
            host="0.0.0.0",
            port=5000,
            reload=True,
            reload_dirs=["app"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down SEO Dashboard API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
