import sys

from mqtt_stream.main import main

sys.exit(main())
