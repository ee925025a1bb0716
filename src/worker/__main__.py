import sys

from src.worker.app import main

sys.exit(main())
