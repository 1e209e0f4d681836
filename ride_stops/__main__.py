from .main import main

if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
