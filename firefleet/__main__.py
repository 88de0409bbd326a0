import sys

from firefleet import cli

if __name__ == "__main__":
    sys.exit(cli.main())
