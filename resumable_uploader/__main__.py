import sys

from resumable_uploader.cli import main

if __name__ == "__main__":
    sys.exit(main())
