from fastapi import FastAPI
from tripsync.webhook import router
import uvicorn

app = FastAPI(title="tripsync")
app.include_router(router)


def main():
    uvicorn.run("tripsync.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
