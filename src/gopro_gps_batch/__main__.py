import sys

from gopro_gps_batch.scripts.extract_gps_telemetry import main

sys.exit(main())
