from __future__ import annotations

import argparse
import getpass
import logging
import os
import pathlib
import sys

from tlscredentials.exceptions import TlsCredentialsError
from tlscredentials.inspector import indent_text, inspect_store, list_item
from tlscredentials.stores import PKCS12, StoreLocator, extract_alias, load_store


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Print the contents of TLS credential stores"
    )
    parser.add_argument(
        "filenames", nargs="+", help="Stores to inspect", type=pathlib.Path
    )
    parser.add_argument(
        "--type",
        default=PKCS12,
        help="The type of the stores (default: %(default)s)",
    )
    parser.add_argument(
        "--alias",
        help="Only print this alias",
    )
    parser.add_argument(
        "--password-env",
        metavar="VARIABLE",
        help="Read the store password from this environment variable instead of"
        " prompting for it",
    )
    parser.add_argument(
        "--expiry",
        action="store_true",
        help="Only list certificates that are expired or not yet valid",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Provide details on loading the stores.",
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    if args.password_env:
        if args.password_env not in os.environ:
            parser.error(f"environment variable {args.password_env} is not set")
        password = os.environ[args.password_env]
    else:
        password = getpass.getpass("Store password: ")

    status = 0
    for filename in args.filenames:
        print(f"{filename}:")
        locator = StoreLocator(path=filename, password=password, store_type=args.type)
        try:
            report = inspect_store(extract_alias(load_store(locator), args.alias))
        except TlsCredentialsError as e:
            print(f"    Error: {e}")
            status = 1
            continue

        if args.expiry:
            invalid = report.invalid_certificates()
            if not invalid:
                print("    All certificates are valid")
            for alias, certificate in invalid:
                print(
                    list_item(f"{alias}: {certificate.subject}: {certificate.validity}")
                )
        else:
            print(indent_text(*report.describe(), indent=4))

    return status


if __name__ == "__main__":
    sys.exit(main())
