#!/usr/bin/env python3
"""
Development server runner for Image Provenance API
Includes auto-reload, logging, and environment checking
"""

import os
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

def check_environment():
    """Show which optional integrations are configured."""
    optional_vars = [
        "API_HOST",
        "API_PORT",
        "DEBUG",
        "LEDGER_ENDPOINT",
        "ORACLE_BACKEND",
        "ORACLE_MODEL_ID",
        "AWS_REGION",
        "INDEX_BACKEND",
        "INDEX_PATH",
        "SIMILARITY_THRESHOLD",
    ]

    print("📋 Configuration:")
    for var in optional_vars:
        print(f"  {var}: {os.getenv(var, 'Not set')}")

    if not os.getenv("LEDGER_ENDPOINT"):
        print("⚠️  LEDGER_ENDPOINT not set - registrations go to an in-memory ledger")

def main():
    """Main entry point for development server."""
    print("🔎 Image Provenance - Development Server")
    print("=" * 50)

    check_environment()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "true").lower() == "true"

    print(f"\n🚀 Starting development server...")
    print(f"   Docs: http://{host}:{port}/docs")
    print("=" * 50)

    try:
        uvicorn.run(
            "provenance.main:app",
            host=host,
            port=port,
            reload=debug,
            log_level="debug" if debug else "info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n🛑 Server stopped by user")

if __name__ == "__main__":
    main()
