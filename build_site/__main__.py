import sys

from build_site.builder import main

sys.exit(main())
