"""Join a room from the command line and stay in the call until interrupted."""
import argparse
import asyncio
import os

from client.call import CallClient
from client.media import MediaAccessError
from client.signaling import SignalingChannel
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def log_event(name: str, payload: dict):
    logger.info(f"[{name}] {payload}")


async def run_call(url: str, room_id: str, name: str, with_media: bool = True):
    signaling = SignalingChannel(url)
    await signaling.connect()
    client = CallClient(signaling, on_event=log_event)
    try:
        await client.join(room_id, name)
        if with_media:
            try:
                await client.start_call()
            except MediaAccessError as e:
                # Still useful for chat; the call can be started again later
                logger.warning(f"Joined without media ({e.reason}): {e}")
        await client.run()
    finally:
        await client.leave()


def main():
    parser = argparse.ArgumentParser(description="CallMesh call client")
    parser.add_argument("room_id")
    parser.add_argument("name")
    parser.add_argument("--url", default=os.getenv("CALLMESH_URL", "ws://localhost:8000/ws"))
    parser.add_argument("--no-media", action="store_true", help="join for chat only")
    args = parser.parse_args()

    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE", None))
    try:
        asyncio.run(run_call(args.url, args.room_id, args.name, with_media=not args.no_media))
    except KeyboardInterrupt:
        logger.info("Interrupted, left the call")


if __name__ == "__main__":
    main()
