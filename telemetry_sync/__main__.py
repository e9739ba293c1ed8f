import sys

from telemetry_sync.runner import main

sys.exit(main())
