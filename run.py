#!/usr/bin/env python3
"""
Payment Engine Entry Point

Starts the FastAPI server and the mandate scheduler in one event loop.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from payment_engine.api import run_server
from payment_engine.config import get_config
from payment_engine.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, config.log_format)

    print("💸 Starting Payment Engine...")
    print(f"🗄️  Storage backend: {config.storage_type}")
    print("🔒 Account lockout and circuit breakers active")
    print(f"⏱️  Mandate scheduler tick: {config.scheduler_tick_seconds:g}s")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Payment Engine...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
