import logging

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from sounds_proxy.configs import settings
from sounds_proxy.routes import episode_router, feed_router

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
app = FastAPI(title="sounds-proxy")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


app.include_router(episode_router, prefix="/episode", tags=["episode"])
app.include_router(feed_router, prefix="/show", tags=["show"])


def run():
    import uvicorn

    uvicorn.run(app, host=settings.listen_host, port=settings.listen_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
