#!/usr/bin/env python3
"""
donorlink API Startup Script

This script starts the donorlink attribution engine API with its documentation.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the donorlink API server."""
    print("🚀 Starting donorlink API Server...")
    print("📊 Features:")
    print("   ✅ Refcode Auto-Match and Historical Attribution")
    print("   ✅ Chunked Transaction Backfill")
    print("   ✅ Daily Reconciliation against the Processor Export")
    print("   ✅ Click-ID Mismatch Detection and Recovery")
    print("")
    print("📖 Documentation will be available at:")
    print("   🌐 Swagger UI:  http://localhost:8000/docs")
    print("   📚 ReDoc:       http://localhost:8000/redoc")
    print("   🔧 Admin Panel: http://localhost:8000/admin")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Run generate_keys.py, or create a .env file with these variables:")
        print("   JWT_SECRET=your-secret-key-here")
        print("   TOKEN_ENCRYPTION_KEY=fernet-key-for-stored-credentials")
        print("   CRON_SECRET=shared-secret-for-scheduled-calls")
        print("")

    try:
        uvicorn.run(
            "donorlink.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["donorlink"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down donorlink API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
