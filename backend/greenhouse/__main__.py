import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "greenhouse.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
