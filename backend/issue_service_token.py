#!/usr/bin/env python3
"""
Issue a bearer token for the payment-execution service.

Usage:
  python issue_service_token.py [--name payments] [--minutes N]

The service sends this token to POST /settlements/{id}/confirm. User access
tokens are refused by that endpoint.
"""

import argparse
from datetime import timedelta

from auth import SERVICE_TOKEN_EXPIRE_MINUTES, create_service_token


def main(argv=None):
    parser = argparse.ArgumentParser(description='Issue a payment service token')
    parser.add_argument('--name', default='payments', help='Service name stored in the token subject')
    parser.add_argument('--minutes', type=int, default=SERVICE_TOKEN_EXPIRE_MINUTES,
                        help='Minutes until the token expires')
    args = parser.parse_args(argv)

    print(create_service_token(args.name, timedelta(minutes=args.minutes)))


if __name__ == "__main__":
    main()
