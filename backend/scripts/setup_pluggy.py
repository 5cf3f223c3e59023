#!/usr/bin/env python3
"""Pluggy setup script.

Stores the Pluggy client id and secret in the OS keychain and checks that
they can authenticate.

Usage:
    1. Go to https://dashboard.pluggy.ai/ and create an application
    2. Copy the application's Client ID and Client Secret
    3. Run this script and paste them when prompted
"""

import getpass
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from integrations.exceptions import AggregatorError
from integrations.pluggy_client import PluggyClient
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


def validate_credentials(client_id: str, client_secret: str) -> int:
    """Authenticate with Pluggy and list institutions.

    Returns:
        The number of institutions the credentials can see.

    Raises:
        AggregatorError: If authentication or the request fails.
    """
    client = PluggyClient(client_id=client_id, client_secret=client_secret)
    try:
        return len(client.list_institutions())
    finally:
        client.close()


def main():
    """Validate Pluggy credentials and store them."""
    print("Pluggy Setup")
    print("=" * 50)
    print()
    print("To get your credentials:")
    print("  1. Go to https://dashboard.pluggy.ai/")
    print("  2. Create or open an application")
    print("  3. Copy the Client ID and Client Secret")
    print()

    client_id = input("Client ID: ").strip()
    client_secret = getpass.getpass("Client Secret: ").strip()

    if not client_id or not client_secret:
        print("Error: both Client ID and Client Secret are required")
        sys.exit(1)

    print()
    print("Checking credentials with Pluggy...")

    try:
        count = validate_credentials(client_id, client_secret)
    except AggregatorError as e:
        print(f"Error: {e}")
        print()
        print("Common issues:")
        print("  - Client ID or secret copied incorrectly")
        print("  - Application disabled in the Pluggy dashboard")
        print("  - Network connectivity issues")
        sys.exit(1)

    print(f"Success! {count} institutions available.")
    _offer_keychain_store(
        {"PLUGGY_CLIENT_ID": client_id, "PLUGGY_CLIENT_SECRET": client_secret}
    )


if __name__ == "__main__":
    main()
