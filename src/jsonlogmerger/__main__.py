import sys

from .jsonlogmerger import main

sys.exit(main())
