"""Utility script to exercise the read tools of a running server."""

import asyncio
import datetime as dt
import json

import fastmcp


async def main() -> None:
    client = fastmcp.Client("http://127.0.0.1:3000/mcp", timeout=60)
    async with client:
        folders = await client.call_tool("list_folders", {})
        print("FOLDERS:", json.dumps(folders.structured_content, indent=2))

        listing = await client.call_tool("fetch_emails", {"folder": "INBOX", "limit": 1})
        struct = listing.structured_content or {}
        rows = struct.get("emails") or []
        print("LIST:", json.dumps(struct, indent=2))
        if rows:
            detail = await client.call_tool("get_email", {"email_id": rows[0]["id"], "folder": "INBOX"})
            print("DETAIL:", json.dumps(detail.structured_content, indent=2))

        calendars = await client.call_tool("list_calendars", {})
        print("CALENDARS:", json.dumps(calendars.structured_content, indent=2))

        now = dt.datetime.now()
        events = await client.call_tool(
            "fetch_events",
            {"start_date": now.isoformat(), "end_date": (now + dt.timedelta(days=7)).isoformat()},
        )
        print("EVENTS:", json.dumps(events.structured_content, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
