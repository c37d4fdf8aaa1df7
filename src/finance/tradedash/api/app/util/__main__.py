import argparse
import base64
import logging
import secrets
import sys

from cryptography.fernet import Fernet

from finance.tradedash.api.model.tokens import TOKEN_KINDS, parse_expiration

logger = logging.getLogger(__name__)


def gen_crypto_key() -> str:
    """Base64 wrapped Fernet key, the format ENCRYPTION_KEY expects."""
    key = Fernet.generate_key()
    return base64.b64encode(key).decode("utf-8")


def gen_secret(num_bytes: int = 48) -> str:
    return secrets.token_urlsafe(num_bytes)


def describe_expiration(value: str) -> str:
    kind = TOKEN_KINDS.get(value.strip().lower())
    lifetime = kind.lifetime if kind is not None else parse_expiration(value)
    if lifetime is None:
        return "never"
    return str(int(lifetime.total_seconds()))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="tradedash-util", description="Dashboard API utilities"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-crypto", help="Generate an encryption key")
    gen_secret_parser = subparsers.add_parser(
        "gen-secret", help="Generate a JWT signing secret"
    )
    gen_secret_parser.add_argument(
        "--bytes", type=int, default=48, help="Number of random bytes."
    )
    expiration = subparsers.add_parser(
        "expiration",
        help="Print a lifetime such as 30d, 12h or a token kind such as refresh in seconds",
    )
    expiration.add_argument("value")

    args = parser.parse_args(argv)

    if args.command == "gen-crypto":
        print(gen_crypto_key())
    elif args.command == "gen-secret":
        print(gen_secret(args.bytes))
    elif args.command == "expiration":
        try:
            print(describe_expiration(args.value))
        except ValueError as e:
            print(str(e), file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
