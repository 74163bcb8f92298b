from kuberoll.cli import main

raise SystemExit(main())
