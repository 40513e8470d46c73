import asyncio
import json
import sys


async def handle(reader, writer):
    peer = writer.get_extra_info("peername")
    data = await reader.read()
    writer.close()

    try:
        batch = json.loads(data.decode("utf-8"))
    except ValueError as e:
        print(f"{peer}: bad batch ({e}), {len(data)} bytes", flush=True)
        return

    print(f"{peer}: {len(batch)} records", flush=True)
    for rec in batch:
        print(
            f"  {rec['timestamp']} {rec['deviceIP']} {rec['dropType']} "
            f"{rec['ingressPort']} {rec['dropReason']}",
            flush=True,
        )


async def main():
    host = "127.0.0.1"
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 5140
    server = await asyncio.start_server(handle, host, port)
    print(f"listening on {host}:{port}", flush=True)
    async with server:
        await server.serve_forever()


if __name__ == "__main__":
    asyncio.run(main())
