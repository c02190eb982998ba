"""Re-queue dead letters through the DLQ admin API.

Either one entry (`--id`) or every reviewable entry matching a filter
(`--channel`, `--error-code`, `--search`). `--dry-run` only lists what would
be re-queued.
"""

import argparse
import asyncio

import httpx


async def replay(
    base_url: str,
    api_key: str,
    admin_key: str,
    dead_letter_id: str | None,
    channel: str | None,
    error_code: str | None,
    search: str | None,
    dry_run: bool,
) -> int:
    """Run one replay and return a process exit code."""

    headers = {"authorization": f"Bearer {api_key}", "x-admin-key": admin_key}
    filters = {"channel": channel, "errorCode": error_code, "search": search}
    async with httpx.AsyncClient(base_url=base_url, headers=headers, timeout=30.0) as client:
        if dry_run:
            params = {key: value for key, value in filters.items() if value}
            params.update({"isUnrecoverable": "false", "size": 200})
            resp = await client.get("/admin/dlq", params=params)
            resp.raise_for_status()
            body = resp.json()
            for row in body["data"]:
                if dead_letter_id and row["id"] != dead_letter_id:
                    continue
                print(
                    f"id={row['id']} request_id={row['requestId']} channel={row['channel']} "
                    f"error_code={row['errorCode']} retry_count={row['retryCount']}"
                )
            print(f"Dry run only; {body['total']} matching entries, nothing re-queued.")
            return 0

        if dead_letter_id:
            resp = await client.post(f"/admin/dlq/{dead_letter_id}/retry")
            if resp.status_code >= 400:
                print(f"Retry rejected status={resp.status_code} body={resp.text}")
                return 2
            print(f"Re-queued id={dead_letter_id}")
            return 0

        resp = await client.post("/admin/dlq/retry-batch", json=filters)
        resp.raise_for_status()
        result = resp.json()
        print(f"attempted={result['attempted']} enqueued={result['enqueued']} failed={result['failed']}")
        for failed_id in result["failedIds"]:
            print(f"failed id={failed_id}")
        return 1 if result["failed"] else 0


def main() -> None:
    """CLI entrypoint for operator DLQ replays."""

    parser = argparse.ArgumentParser(description="Re-queue dead letters via the admin API.")
    parser.add_argument("--base-url", default="http://localhost:8002")
    parser.add_argument("--api-key", required=True, help="tenant bearer credential")
    parser.add_argument("--admin-key", required=True, help="ADMIN_API_KEY of the DLQ service")
    parser.add_argument("--id", dest="dead_letter_id", default=None, help="single DLQ entry id")
    parser.add_argument("--channel", default=None)
    parser.add_argument("--error-code", default=None)
    parser.add_argument("--search", default=None)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    rc = asyncio.run(
        replay(
            base_url=args.base_url,
            api_key=args.api_key,
            admin_key=args.admin_key,
            dead_letter_id=args.dead_letter_id,
            channel=args.channel,
            error_code=args.error_code,
            search=args.search,
            dry_run=args.dry_run,
        )
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
