from fnx.cli import main

raise SystemExit(main())
