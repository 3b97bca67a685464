import asyncio

from etching_server import EtchingServer
from etching_status_client.etching_status_client import EtchingStatusClient
from etching_status_client.models import ClientConfig, PollUpdate


async def status_changed(update: PollUpdate):
    if update.is_error:
        print(f"Fetch failed, still polling: {update.error}")
    else:
        print(f"Stage: {update.status.stage} (terminal: {update.is_terminal})")


async def main():
    PORT = 8000
    server = EtchingServer(step_time=2.0, error_rate=0.1, auto_progress=True)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(
        base_url=f"http://localhost:{PORT}",
        api_key="demo-key",
        poll_interval=1.0,
        log_endpoint=f"http://localhost:{PORT}/logs",
    )

    async with EtchingStatusClient(config) as client:
        try:
            final_status = await client.poll_until_complete(
                "demo-rune", timeout=60.0, on_update=status_changed
            )
            print(f"Final stage: {final_status.stage}")
        except TimeoutError as e:
            print(f"Polling timed out: {e}")
        except Exception as e:
            print(f"Error occurred: {e}")

    print(f"Log records forwarded: {len(server.logs)}")
    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
