from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from podcast_engine.api.routes.jobs import router as jobs_router

app = FastAPI(
    title="Podcast Engine API",
    description="Chunked podcast audio generation jobs",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(jobs_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
