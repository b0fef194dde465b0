from agent_coord.cli import main

raise SystemExit(main())
