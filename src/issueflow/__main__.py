import sys

from issueflow.cli import main

sys.exit(main())
