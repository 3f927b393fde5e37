import sys

from perpx.replay import main

if __name__ == "__main__":
    sys.exit(main())
