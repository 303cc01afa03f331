"""
Session-affine calls against a JSON-RPC session service.

Creates a few sessions, runs a query on each and deletes them again, printing
how the sessions were spread over the channel pool.

Set MANIFOLD_ENDPOINT to the service URL. Set MANIFOLD_API_CONFIG to a JSON
API config file to override the built-in rules.
"""

import asyncio
import logging
import os

from dotenv import load_dotenv

from manifold.channel import ManagedChannel
from manifold.config import ApiConfig, load_api_config
from manifold.transport.http import http_channel_factory

DEFAULT_CONFIG = ApiConfig.model_validate(
    {
        "channelPool": {"maxSize": 3, "maxConcurrentStreamsLowWatermark": 2},
        "method": [
            {
                "name": ["sessions.v1.Sessions/CreateSession"],
                "affinity": {"command": "BIND", "affinityKey": "name"},
            },
            {
                "name": [
                    "sessions.v1.Sessions/GetSession",
                    "sessions.v1.Sessions/ExecuteSql",
                    "sessions.v1.Sessions/ExecuteStreamingSql",
                ],
                "affinity": {"command": "BOUND", "affinityKey": "session"},
            },
            {
                "name": ["sessions.v1.Sessions/DeleteSession"],
                "affinity": {"command": "UNBIND", "affinityKey": "name"},
            },
        ],
    }
)


async def main():
    endpoint = os.environ["MANIFOLD_ENDPOINT"]
    config_path = os.getenv("MANIFOLD_API_CONFIG")
    config = load_api_config(config_path) if config_path else DEFAULT_CONFIG

    async with ManagedChannel.from_config(
        http_channel_factory(endpoint), config
    ) as channel:
        sessions = await asyncio.gather(
            *(
                channel.unary_unary(
                    "sessions.v1.Sessions/CreateSession", {"database": "example"}
                )
                for _ in range(6)
            )
        )
        logging.info(f"Pool after create: {channel.stats()}")

        for session in sessions:
            result = await channel.unary_unary(
                "sessions.v1.Sessions/ExecuteSql",
                {"session": session["name"], "sql": "SELECT 1"},
            )
            logging.info(f"{session['name']}: {result}")

        for session in sessions:
            await channel.unary_unary(
                "sessions.v1.Sessions/DeleteSession", {"name": session["name"]}
            )
        logging.info(f"Pool after delete: {channel.stats()}")


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
