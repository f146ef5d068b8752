from page_watch.cli import main


raise SystemExit(main())
