import sys

from ntp_pester.main import main

sys.exit(main())
