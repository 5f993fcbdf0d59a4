import argparse
import base64
import secrets

from cryptography.fernet import Fernet

from earth.ma.portal.twofa.codes import generate_totp_secret, get_totp_uri


def gen_secret() -> None:
    print(secrets.token_urlsafe(48))


def gen_crypto_key() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


def gen_totp(account_label: str) -> None:
    secret = generate_totp_secret()
    print(f"secret: {secret}")
    print(f"uri: {get_totp_uri(secret, account_label)}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="ma-portal-util", description="Ma Earth portal utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser(
        "gen-secret", help="Generate a SESSION_SECRET or CSRF_SECRET value"
    )
    _ = subparsers.add_parser("gen-crypto", help="Generate an ENCRYPTION_KEY value")
    gen_totp_parser = subparsers.add_parser(
        "gen-totp", help="Generate a TOTP secret and provisioning URI"
    )
    gen_totp_parser.add_argument(
        "label", nargs="?", default="test", help="Account label shown in the app."
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-secret":
        gen_secret()
    elif command == "gen-crypto":
        gen_crypto_key()
    elif command == "gen-totp":
        gen_totp(args["label"])


if __name__ == "__main__":
    main()
