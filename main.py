#!/usr/bin/env python3
"""
Auto-Apply - Main Entry Point

Unified entry point for the application submission pipeline.

Usage:
    # Run API server
    python main.py server

    # Queue a batch of jobs (JSON list of {"job_external_id": ..., "cover_letter": ...})
    python main.py enqueue --user-id u1 --jobs jobs.json

    # Ask a running server to dispatch one workflow
    python main.py run --workflow-id wf_...

    # Show workflow progress and the user's rate limit bucket (from the server)
    python main.py status --workflow-id wf_...
"""

import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path

import aiohttp
from dotenv import load_dotenv

load_dotenv()

from api.config import get_config  # noqa: E402

config = get_config()

logger = logging.getLogger("autoapply")


def check_environment() -> bool:
    """Check that required settings are present."""
    missing = config.validate()

    if missing:
        print("Missing required settings:")
        for name in missing:
            print(f"  - {name}")
        print("\nPlease set these in your .env file or environment.")
        return False

    return True


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = False):
    """Run the FastAPI server."""
    import uvicorn

    print(f"Starting server on {host}:{port}")
    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


def load_jobs(path: str) -> list:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("jobs") or []
    jobs = []
    for entry in data:
        if isinstance(entry, (str, int)):
            jobs.append({"job_external_id": str(entry)})
        elif isinstance(entry, dict):
            jobs.append(entry)
    return jobs


async def enqueue_jobs(user_id: str, jobs_path: str, cv_reference: str = None, workflow_id: str = None):
    """Create a workflow (or extend one) from a jobs file."""
    from api.main import build_pipeline

    pipeline = build_pipeline(config)
    await pipeline.store.init_database()

    if not workflow_id or await pipeline.store.get_workflow(workflow_id) is None:
        workflow_id = await pipeline.store.create_workflow(user_id, cv_reference, workflow_id=workflow_id)

    jobs = load_jobs(jobs_path)
    added = await pipeline.store.enqueue(workflow_id, jobs)
    logger.info(f"Workflow {workflow_id}: queued {added}/{len(jobs)} jobs")
    print(workflow_id)
    return workflow_id


class ServerError(Exception):
    """The API server answered with an error status."""

    def __init__(self, status: int, detail: str):
        super().__init__(f"{status}: {detail}")
        self.status = status
        self.detail = detail


def _api_headers() -> dict:
    headers = {"Content-Type": "application/json"}
    if config.ORCHESTRATOR_SECRET:
        headers["X-Core-Secret"] = config.ORCHESTRATOR_SECRET
    return headers


async def _api_call(method: str, api_url: str, path: str) -> dict:
    timeout = aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT_SECONDS)
    async with aiohttp.ClientSession(timeout=timeout, headers=_api_headers()) as session:
        async with session.request(method, api_url.rstrip("/") + path) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = {}
            if resp.status >= 400:
                detail = body.get("detail") if isinstance(body, dict) else None
                raise ServerError(resp.status, str(detail or resp.reason))
            return body


async def run_workflow(workflow_id: str, api_url: str = None) -> bool:
    """Ask the running server to dispatch a workflow.

    The server owns the rate limiter; the CLI never dispatches on its own.
    """
    api_url = api_url or config.API_URL
    try:
        result = await _api_call("POST", api_url, f"/api/queue/workflows/{workflow_id}/start")
    except ServerError as e:
        print(f"Workflow {workflow_id}: {e.detail}")
        return False
    except aiohttp.ClientError as e:
        print(f"Cannot reach server at {api_url}: {e}")
        return False

    logger.info(f"Workflow {workflow_id}: started={result.get('started')} running={result.get('running')}")
    print(json.dumps(result, indent=2))
    return True


async def show_status(workflow_id: str, api_url: str = None) -> bool:
    """Print progress, completion estimate and the server's rate limit snapshot."""
    api_url = api_url or config.API_URL
    try:
        progress = await _api_call("GET", api_url, f"/api/queue/workflows/{workflow_id}/progress")
        bucket = await _api_call("GET", api_url, f"/api/rate-limit/{progress['user_id']}")
    except ServerError as e:
        print(f"Workflow {workflow_id}: {e.detail}")
        return False
    except aiohttp.ClientError as e:
        print(f"Cannot reach server at {api_url}: {e}")
        return False

    print(json.dumps({**progress, "rate_limit": bucket}, indent=2, default=str))
    return True


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Auto-Apply - rate-limited job application submission"
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Server command
    server_parser = subparsers.add_parser('server', help='Run API server')
    server_parser.add_argument('--host', default=config.HOST, help='Host to bind to')
    server_parser.add_argument('--port', type=int, default=config.PORT, help='Port to bind to')
    server_parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    # Enqueue command
    enqueue_parser = subparsers.add_parser('enqueue', help='Queue jobs into a workflow')
    enqueue_parser.add_argument('--user-id', required=True, help='Owner of the workflow')
    enqueue_parser.add_argument('--jobs', required=True, help='Path to a JSON list of jobs')
    enqueue_parser.add_argument('--cv-reference', help='CV the applications are based on')
    enqueue_parser.add_argument('--workflow-id', help='Existing workflow to extend')

    # Run command
    run_parser = subparsers.add_parser('run', help='Start dispatching a workflow on the server')
    run_parser.add_argument('--workflow-id', required=True)
    run_parser.add_argument('--api-url', default=config.API_URL, help='Base URL of the running server')

    # Status command
    status_parser = subparsers.add_parser('status', help='Show workflow progress')
    status_parser.add_argument('--workflow-id', required=True)
    status_parser.add_argument('--api-url', default=config.API_URL, help='Base URL of the running server')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    # Run command
    if args.command == 'server':
        if not check_environment():
            sys.exit(1)
        run_server(args.host, args.port, args.reload)

    elif args.command == 'enqueue':
        asyncio.run(enqueue_jobs(args.user_id, args.jobs, args.cv_reference, args.workflow_id))

    elif args.command == 'run':
        if not asyncio.run(run_workflow(args.workflow_id, args.api_url)):
            sys.exit(1)

    elif args.command == 'status':
        if not asyncio.run(show_status(args.workflow_id, args.api_url)):
            sys.exit(1)


if __name__ == "__main__":
    main()
