"""
talos_provisioner/cli/provisionerctl.py

Entry point of the `talos-provisioner` command. Dispatches
`talos-provisioner <subcommand> [args...]` to the module
`talos_provisioner.cli.<subcommand>`.
"""

import subprocess
import sys

SUBCOMMANDS = ("run", "render", "secrets")


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in SUBCOMMANDS:
        print(f"Usage: talos-provisioner {{{'|'.join(SUBCOMMANDS)}}} [args...]")
        sys.exit(1)

    subcommand = sys.argv[1]
    subcommand_args = sys.argv[2:]

    cmd = [sys.executable, "-m", f"talos_provisioner.cli.{subcommand}"] + subcommand_args
    sys.exit(subprocess.call(cmd))


if __name__ == "__main__":
    main()
