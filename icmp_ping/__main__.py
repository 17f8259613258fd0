from .pinger import main

raise SystemExit(main())
