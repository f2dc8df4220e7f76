from typing import Any, Dict, List, Optional
import argparse
import json
import logging

import aiohttp

from social.graze.paymail.config import ResolveOptions, Settings
from social.graze.paymail.errors import PaymailError
from social.graze.paymail.model.trace import TraceEntry
from social.graze.paymail.resolve.brfc import generate_brfc_id
from social.graze.paymail.resolve.session import resolve

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resolve", description="Resolve and validate paymail handles"
    )
    parser.add_argument(
        "subject", nargs="*", help="The paymail handle(s) or domain(s) to resolve."
    )
    parser.add_argument(
        "--capability",
        action="append",
        dest="capabilities",
        help="Capability name or BRFC code to query. May be repeated.",
    )
    parser.add_argument("--name-server", help="Nameserver used for SRV lookups.")
    parser.add_argument(
        "--bsvalias", dest="bsvalias_version", help="Expected bsvalias version."
    )
    parser.add_argument("--timeout", dest="request_timeout", type=float)
    parser.add_argument("--deadline", type=float)

    parser.add_argument("--skip-dns-check", action="store_true")
    parser.add_argument("--skip-ssl-check", action="store_true")
    parser.add_argument("--skip-srv-check", action="store_true")
    parser.add_argument("--skip-pki", action="store_true")
    parser.add_argument("--skip-public-profile", action="store_true")
    parser.add_argument("--skip-tracing", action="store_true")
    parser.add_argument("--skip-brfc-validation", action="store_true")
    parser.add_argument(
        "--strict-brfc",
        action="store_true",
        help="Report capability codes that are not BRFC ids as errors.",
    )

    parser.add_argument("--sender-handle", help="Sender handle for payment destinations.")
    parser.add_argument("--sender-name")
    parser.add_argument("--amount", type=int, help="Amount in satoshis.")
    parser.add_argument("--purpose")
    parser.add_argument("--signature", help="Sender signature of the request.")
    parser.add_argument(
        "--verify-pubkey", help="Public key to verify, instead of the PKI key."
    )

    parser.add_argument("--brfc-title", help="Print the BRFC id for this title and exit.")
    parser.add_argument("--brfc-author", default="")
    parser.add_argument("--brfc-version", default="")
    return parser


def options_from_args(args: Dict[str, Any], settings: Settings) -> ResolveOptions:
    overrides = {
        key: args.get(key)
        for key in (
            "name_server",
            "bsvalias_version",
            "request_timeout",
            "deadline",
            "sender_handle",
            "sender_name",
            "amount",
            "purpose",
            "signature",
            "verify_pubkey",
            "capabilities",
        )
    }
    for flag in (
        "skip_dns_check",
        "skip_ssl_check",
        "skip_srv_check",
        "skip_pki",
        "skip_public_profile",
        "skip_tracing",
        "skip_brfc_validation",
        "strict_brfc",
    ):
        overrides[flag] = bool(args.get(flag))
    return ResolveOptions.from_settings(settings, **overrides)


def render(
    subject: str,
    result: Optional[Any],
    errors: List[PaymailError],
    trace: List[TraceEntry],
) -> str:
    document: Dict[str, Any] = {
        "subject": subject,
        "result": result.model_dump(mode="json") if result is not None else None,
        "errors": [error.to_detail().model_dump(mode="json") for error in errors],
        "trace": [entry.model_dump(mode="json") for entry in trace],
    }
    return json.dumps(document, indent=2)


async def realMain(settings: Optional[Settings] = None) -> None:
    parser = build_parser()
    args = vars(parser.parse_args())

    if args.get("brfc_title"):
        print(
            generate_brfc_id(
                args["brfc_title"], args.get("brfc_author", ""), args.get("brfc_version", "")
            )
        )
        return

    subjects: List[str] = args.get("subject", [])
    if not subjects:
        parser.error("at least one subject is required")

    options = options_from_args(args, settings or Settings())

    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            trace: List[TraceEntry] = []
            try:
                result, errors = await resolve(
                    subject, options, trace_sink=trace, client_session=session
                )
            except PaymailError as e:
                logger.error("Unable to resolve %s: %s", subject, e)
                print(render(subject, None, [e], trace))
                continue
            except Exception:
                logger.exception("Exception resolving subject %s", subject)
                continue
            print(render(subject, result, errors, trace))


def main() -> None:
    from social.graze.paymail.cli import invoke

    invoke()


if __name__ == "__main__":
    main()
