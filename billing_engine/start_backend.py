#!/usr/bin/env python3
"""
Billing engine HTTP server.

Usage:
    python -m billing_engine.start_backend [--host 0.0.0.0] [--port 8000]
"""
import argparse
import sys


def main() -> None:
    parser = argparse.ArgumentParser(description="Billing engine API server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    import uvicorn

    print(f"[billing] Server: http://{args.host}:{args.port}")
    print("[billing] Press CTRL+C to stop")
    try:
        uvicorn.run(
            "billing_engine.main:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[billing] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
