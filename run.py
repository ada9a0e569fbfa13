#!/usr/bin/env python3
"""
Loan Engine Entry Point

Starts the FastAPI server with host, port and storage taken from
LOAN_ENGINE_* environment variables (or .env).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_engine.api import run_server
from loan_engine.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Loan Engine...")
    print(f"Storage: {settings.database_url}")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
