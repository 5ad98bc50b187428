from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .db.schema import init_db
from .engines.applications.session import sessions
from .routers import applications, drafts, health, wizard

app = FastAPI(title="Study Abroad Admissions API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup() -> None:
    init_db()


@app.on_event("shutdown")
async def shutdown() -> None:
    await sessions.close_all()


app.include_router(health.router)
app.include_router(wizard.router)
app.include_router(drafts.router)
app.include_router(applications.router)


@app.get("/")
def root():
    return {"message": "Study Abroad Admissions API", "docs": "/docs"}
