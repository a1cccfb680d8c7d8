#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server with the host and port from configuration
(LOANSVC_API_HOST, LOANSVC_API_PORT).
"""

import sys

from loan_servicing.api import run_server
from loan_servicing.config import get_config


if __name__ == "__main__":
    cfg = get_config()
    print("Starting Loan Servicing Engine...")
    print(f"API available at: http://{cfg.api_host}:{cfg.api_port}")
    print(f"Documentation at: http://{cfg.api_host}:{cfg.api_port}/docs")
    print()

    try:
        run_server(host=cfg.api_host, port=cfg.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Servicing Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
