import sys

from caption_relay.cli import main

sys.exit(main())
