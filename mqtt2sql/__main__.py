import sys

from .ingestor import main

sys.exit(main())
