#!/usr/bin/env python3
"""Belvo setup script.

Stores the Belvo secret id and password in the OS keychain and checks that
they can authenticate.

Usage:
    1. Go to https://dashboard.belvo.com/ and open API keys
    2. Create a key pair for the sandbox or production environment
    3. Run this script and paste the Secret ID and Secret password
"""

import getpass
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from integrations.belvo_client import BelvoClient
from integrations.exceptions import AggregatorError
from services.credential_manager import set_credential


def _offer_keychain_store(credentials: dict[str, str]) -> None:
    """Prompt the user to store credentials in the OS keychain."""
    answer = input("\nStore these credentials in the keychain? [Y/n] ").strip().lower()
    if answer in ("", "y", "yes"):
        for key, value in credentials.items():
            if set_credential(key, value):
                print(f"  Stored {key} in keychain")
            else:
                print(f"  Failed to store {key}")
    else:
        print("  Skipped keychain storage. Add them to your .env file instead:")
        for key in credentials:
            print(f"  {key}=...")


def validate_credentials(secret_id: str, secret_password: str) -> int:
    """Authenticate with Belvo and list Brazilian institutions.

    Returns:
        The number of institutions the key pair can see.

    Raises:
        AggregatorError: If authentication or the request fails.
    """
    client = BelvoClient(secret_id=secret_id, secret_password=secret_password)
    try:
        return len(client.list_institutions())
    finally:
        client.close()


def main():
    """Validate Belvo secrets and store them."""
    print("Belvo Setup")
    print("=" * 50)
    print()
    print("To get your secrets:")
    print("  1. Go to https://dashboard.belvo.com/")
    print("  2. Open API keys and create a key pair")
    print("  3. Copy the Secret ID and Secret password")
    print("  (BELVO_BASE_URL picks sandbox or production)")
    print()

    secret_id = input("Secret ID: ").strip()
    secret_password = getpass.getpass("Secret password: ").strip()

    if not secret_id or not secret_password:
        print("Error: both Secret ID and Secret password are required")
        sys.exit(1)

    print()
    print("Checking secrets with Belvo...")

    try:
        count = validate_credentials(secret_id, secret_password)
    except AggregatorError as e:
        print(f"Error: {e}")
        print()
        print("Common issues:")
        print("  - Secrets copied incorrectly")
        print("  - Sandbox secrets used against production (or the reverse)")
        print("  - Network connectivity issues")
        sys.exit(1)

    print(f"Success! {count} institutions available.")
    _offer_keychain_store(
        {"BELVO_SECRET_ID": secret_id, "BELVO_SECRET_PASSWORD": secret_password}
    )


if __name__ == "__main__":
    main()
