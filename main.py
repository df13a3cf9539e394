import sys

from form_cleaner.cli import main

if __name__ == "__main__":
    sys.exit(main())
