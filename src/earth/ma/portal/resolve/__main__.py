from typing import List
import argparse
import aiohttp
import asyncio
import logging

from earth.ma.portal.atproto.pds import DiscoveryError, discover_oauth_endpoints
from earth.ma.portal.resolve.handle import ResolutionError, resolve_subject

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="ma-resolve", description="Resolve handles and DIDs"
    )
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-directory-url",
        default="https://plc.directory",
        help="The PLC directory used for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--handle-resolver-url",
        default="https://bsky.social",
        help="The XRPC service used for resolving handles.",
    )
    parser.add_argument(
        "--endpoints",
        action="store_true",
        help="Also discover the OAuth endpoints of each subject's PDS.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            try:
                resolved = await resolve_subject(
                    session,
                    subject,
                    args["handle_resolver_url"],
                    args["plc_directory_url"],
                )
                print(f"resolved_subject {resolved}")
                if args.get("endpoints"):
                    endpoints = await discover_oauth_endpoints(session, resolved.pds)
                    print(f"oauth_endpoints {endpoints}")
            except (ResolutionError, DiscoveryError):
                logging.exception("Exception resolving subject %s", subject)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
