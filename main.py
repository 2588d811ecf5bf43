"""ASGI compatibility entrypoint for platforms that resolve `main:app`."""

from solvechain.main import app

__all__ = ["app", "main"]


def main() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)


if __name__ == "__main__":
    main()
