#!/usr/bin/env python3
"""
Run a stored flow on a flowdash server and wait for the result.
"""

import asyncio
import json
import sys
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

TERMINAL_STATUSES = ("success", "failed")


async def run_flow(
    flow_id: str,
    auth_token: str,
    input_data: Any = None,
    api_url: str = "http://localhost:8000/api/v1",
    poll_interval: float = 1.0,
    show_logs: bool = False,
) -> dict[str, Any]:
    """Start a flow execution and poll until it finishes.

    Args:
        flow_id: Flow to execute
        auth_token: JWT bearer token
        input_data: JSON input passed to the flow
        api_url: flowdash API URL
        poll_interval: Seconds between status checks
        show_logs: Print new execution log lines while polling

    Returns:
        Final execution record
    """
    async with httpx.AsyncClient(timeout=30.0) as client:
        headers = {"Authorization": f"Bearer {auth_token}"}

        logger.info("starting_flow", flow_id=flow_id)
        start_response = await client.post(
            f"{api_url}/flows/{flow_id}/execute",
            headers=headers,
            json={"input": input_data},
        )
        start_response.raise_for_status()
        execution_id = start_response.json()["execution_id"]

        logger.info("execution_started", execution_id=execution_id)

        last_sequence = -1
        while True:
            if show_logs:
                logs_response = await client.get(
                    f"{api_url}/executions/{execution_id}/logs",
                    headers=headers,
                    params={"after": last_sequence},
                )
                logs_response.raise_for_status()
                for line in logs_response.json():
                    last_sequence = line["sequence"]
                    node = f"[{line['node_id']}] " if line.get("node_id") else ""
                    print(f"{line['level'].upper():7} {node}{line['message']}")

            status_response = await client.get(
                f"{api_url}/executions/{execution_id}",
                headers=headers,
            )
            status_response.raise_for_status()
            execution = status_response.json()

            status = execution["status"]
            logger.debug("execution_status", status=status)

            if status in TERMINAL_STATUSES:
                return execution

            await asyncio.sleep(poll_interval)


async def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Execute a flow and wait for its result")
    parser.add_argument("flow_id", help="Flow ID")
    parser.add_argument("--token", required=True, help="Auth token")
    parser.add_argument("--input", default=None, help="JSON input for the flow")
    parser.add_argument(
        "--api-url",
        default="http://localhost:8000/api/v1",
        help="API URL",
    )
    parser.add_argument("--logs", action="store_true", help="Print execution logs")

    args = parser.parse_args()

    try:
        input_data = json.loads(args.input) if args.input else None
    except json.JSONDecodeError as e:
        print(f"✗ --input is not valid JSON: {e}")
        sys.exit(2)

    try:
        result = await run_flow(
            flow_id=args.flow_id,
            auth_token=args.token,
            input_data=input_data,
            api_url=args.api_url,
            show_logs=args.logs,
        )
    except httpx.HTTPError as e:
        logger.exception("run_failed", error=str(e))
        print(f"\n✗ Error: {e}\n")
        sys.exit(1)

    print(f"\n{'=' * 60}")
    print("EXECUTION RESULT")
    print(f"{'=' * 60}")
    print(json.dumps(result, indent=2, ensure_ascii=False))
    print()

    if result["status"] == "success":
        print("✓ Flow finished successfully")
        sys.exit(0)
    else:
        print(f"✗ Flow failed: {result.get('error')}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
