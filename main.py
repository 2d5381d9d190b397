import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from utils.settings import get_settings

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from db.init import init_db
from routers import clinic, subscription


origins = [
    "http://localhost:3000",   # your frontend
    "http://127.0.0.1:3000",
    settings.frontend_url,
]


app = FastAPI(title="Clinic Billing Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(dict.fromkeys(origins)),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def startup():
    init_db()

@app.get("/health")
def health_check():
    return {"status": "ok"}

# Routers
app.include_router(clinic.router, prefix="/clinics", tags=["Clinics"])
app.include_router(subscription.router, prefix="/subscriptions", tags=["Subscriptions"])


@app.get("/")
def root():
    return {"message": "Clinic Billing Backend running successfully"}
