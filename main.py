"""
main.py
======
Interactive demo of the passkey registration and login ceremonies.

This script orchestrates:
- CeremonyManager: issues challenges, verifies responses, stores public keys
- Authenticator: creates passkeys and signs challenges on the "device"

Demo options:
1. Register - create a passkey, verify proof-of-possession, store the public key
2. Login - authenticate with the passkey, verify signature + sign counter
3. Replay - resend the last login response (rejected: challenge consumed)
4. Tampered challenge - sign a different challenge (rejected: challenge mismatch)
5. Abandon registration - start one and walk away (username reclaimed after timeout)
6. Show stored data - debug dump of server records and authenticator passkeys
"""

import dataclasses
import json

from ceremony import CeremonyManager
from config import Settings, configure_logging
from credential_store import CredentialStore
from errors import CeremonyError
from session_issuer import InMemorySessionIssuer
from authenticator import Authenticator
from verification import SignedChallengeVerifier


def main() -> None:
    """
    Main entry point: run the interactive ceremony demo loop.

    The software authenticator only speaks the signed-challenge protocol, so
    the demo always uses SignedChallengeVerifier whatever PASSKEY_VERIFIER says.
    """
    settings = dataclasses.replace(Settings.from_env(), verifier="signed")
    configure_logging(settings.log_level)

    sessions = InMemorySessionIssuer()
    store = CredentialStore(settings.users_file)
    manager = CeremonyManager(
        store,
        SignedChallengeVerifier(),
        settings,
        sessions,
    )
    authenticator = Authenticator(settings.origin)

    last_assertion = None
    last_username = None

    try:
        while True:
            print("\n=== PASSKEY CEREMONY DEMO ===")
            print("1) Register (create passkey)")
            print("2) Login (use passkey)")
            print("3) Replay last login response")
            print("4) Tampered challenge (verification fails)")
            print(f"5) Abandon a registration (expires after {settings.registration_timeout:g}s)")
            print("6) Show stored data (server + authenticator)")
            print("0) Exit")

            choice = input("Choose: ").strip()

            if choice == "0":
                break

            try:
                # -------------------------------------------------------------
                # Option 1: Register a new passkey
                # -------------------------------------------------------------
                if choice == "1":
                    username = input("Username: ")
                    options = manager.start_registration(username)
                    print(f"[Server] Issued challenge: {options['challenge']}")

                    attestation = authenticator.create_credential(options)
                    print(f"[Authenticator] Passkey created. credential_id={attestation['rawId']}")

                    result = manager.complete_registration(username, attestation)
                    print(f"[Server] {result.message} Stored PUBLIC KEY only.")

                # -------------------------------------------------------------
                # Option 2: Login with passkey
                # -------------------------------------------------------------
                elif choice == "2":
                    username = input("Username: ")
                    options = manager.start_login(username)
                    print(f"[Server] Issued challenge: {options['challenge']}")

                    assertion = authenticator.get_assertion(options)
                    print("[Authenticator] Signed challenge using local private key.")

                    result = manager.complete_login(username, assertion)
                    print(f"[Server] {result.message} session={result.session_token[:12]}...")
                    last_assertion, last_username = assertion, username

                # -------------------------------------------------------------
                # Option 3: Replay the last accepted login response
                # -------------------------------------------------------------
                elif choice == "3":
                    if last_assertion is None:
                        print("No login to replay yet. Log in first (option 2).")
                        continue
                    print("[Attacker] Replaying captured login response...")
                    manager.complete_login(last_username, last_assertion)
                    print("[Server] Replay accepted (unexpected).")

                # -------------------------------------------------------------
                # Option 4: Tampered challenge
                # -------------------------------------------------------------
                elif choice == "4":
                    username = input("Username: ")
                    options = manager.start_login(username)
                    print(f"[Server] Issued challenge: {options['challenge']}")

                    forged = dict(options, challenge=options["challenge"][::-1])
                    assertion = authenticator.get_assertion(forged)
                    print("[Attacker] Authenticator signed a DIFFERENT challenge.")

                    manager.complete_login(username, assertion)
                    print("[Server] Tampered response accepted (unexpected).")

                # -------------------------------------------------------------
                # Option 5: Start a registration and never finish it
                # -------------------------------------------------------------
                elif choice == "5":
                    username = input("Username: ")
                    manager.start_registration(username)
                    print(f"[Server] Pending user created; available now: {manager.is_available(username)}")
                    print("[Client] Closed the tab. Check availability again after the timeout.")

                # -------------------------------------------------------------
                # Option 6: Debug dump of stored data
                # -------------------------------------------------------------
                elif choice == "6":
                    print("\n--- SERVER RECORDS ---")
                    print(json.dumps(store.debug_dump(), indent=2))
                    print("\n--- AUTHENTICATOR ---")
                    print(json.dumps(authenticator.debug_dump(), indent=2))
                    print(f"\nActive sessions: {len(sessions)}")

                else:
                    print("Invalid option.")

            except CeremonyError as e:
                print(f"[Server] Rejected ({e.kind}): {e.message}")
            except (ValueError, PermissionError) as e:
                print(f"[Authenticator] ERROR: {e}")
    finally:
        manager.close()


if __name__ == "__main__":
    main()
