#!/usr/bin/env python3
"""
Safe keeper startup script.

Runs pre-flight checks before starting the loops:
1. .env present with the keys the selected loops need
2. Deployment file present
3. Network shown so a mainnet run is never an accident
4. Startup confirmation (skip with --no-confirm for systemd)
"""

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from keeperbot.config.deployment import DEFAULT_CANDIDATES

LOCAL_HINTS = ("127.0.0.1", "localhost", "anvil", "hardhat")


def check_env_file(roles):
    env_file = Path(".env")
    if not env_file.exists() and not all(os.getenv(f"KB_{r.upper()}_PRIVATE_KEY") for r in roles):
        print("❌ ERROR: .env file not found")
        print("\nCreate .env with:")
        for role in roles:
            print(f"  KB_{role.upper()}_PRIVATE_KEY=0x...")
        return False

    load_dotenv()
    missing = [f"KB_{r.upper()}_PRIVATE_KEY" for r in roles if not os.getenv(f"KB_{r.upper()}_PRIVATE_KEY")]
    if missing:
        print(f"❌ ERROR: Missing credentials: {', '.join(missing)}")
        return False
    if len(roles) == 2 and os.getenv("KB_KEEPER_PRIVATE_KEY") == os.getenv("KB_FEEDER_PRIVATE_KEY"):
        print("❌ ERROR: keeper and feeder must use different keys")
        return False

    print("✅ Credentials present")
    return True


def check_deployment():
    explicit = os.getenv("KB_DEPLOYMENT_FILE")
    candidates = [explicit] if explicit else list(DEFAULT_CANDIDATES)
    for candidate in candidates:
        if Path(candidate).exists():
            print(f"✅ Deployment file: {candidate}")
            return True
    print("❌ ERROR: no deployment file found")
    print(f"   Tried: {', '.join(candidates)}")
    return False


def show_network():
    rpc_url = os.getenv("KB_RPC_URL", "http://127.0.0.1:8545")
    local = any(h in rpc_url.lower() for h in LOCAL_HINTS)
    print(f"\n{'🟡' if local else '🔴'} RPC: {rpc_url}")
    if not local:
        print("   ⚠️  Remote network: transactions spend real gas")
    return local


def confirm_startup(roles, auto_confirm=False):
    print("\n" + "=" * 60)
    print("PRE-FLIGHT CHECKS")
    print("=" * 60)

    results = [check_env_file(roles), check_deployment()]
    if not all(results):
        print("\n❌ Pre-flight checks FAILED")
        return False

    print("\n✅ All pre-flight checks passed!")
    show_network()
    print(f"   Loops: {', '.join(roles)}")

    if auto_confirm:
        print("\n✅ Auto-confirm enabled (--no-confirm)")
        return True

    response = input("\nType 'START' to continue: ").strip().upper()
    if response != "START":
        print("❌ Startup cancelled")
        return False
    return True


def parse_roles(args):
    if args.keeper and not args.feeder:
        return ("keeper",)
    if args.feeder and not args.keeper:
        return ("feeder",)
    return ("keeper", "feeder")


def main():
    parser = argparse.ArgumentParser(description="DEX keeper and price feeder")
    parser.add_argument("--keeper", action="store_true", help="Run only the keeper loop")
    parser.add_argument("--feeder", action="store_true", help="Run only the price feeder loop")
    parser.add_argument("--no-confirm", action="store_true",
                        help="Skip startup confirmation (for systemd/automated use)")
    args = parser.parse_args()
    roles = parse_roles(args)

    if not confirm_startup(roles, auto_confirm=args.no_confirm):
        sys.exit(1)

    from keeperbot.main import run

    code = run(roles)
    if code:
        print("\n❌ Startup failed, see keeperbot.log for details")
    sys.exit(code)


if __name__ == "__main__":
    main()
