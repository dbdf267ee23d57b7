from ledger_analytics.cli import main

raise SystemExit(main())
