from fastapi import FastAPI, APIRouter, HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.middleware.cors import CORSMiddleware
import logging
from pydantic import ValidationError
from typing import Any, Dict, List, Optional
import uuid
from datetime import datetime, timezone, timedelta
from zoneinfo import ZoneInfo
import bcrypt
import jwt

from .config import (
    CORS_ORIGINS,
    IS_PROD,
    JWT_ALGORITHM,
    JWT_EXPIRATION_HOURS,
    JWT_SECRET,
    JWT_SECRET_SOURCE,
    LOG_LEVEL,
    START_DATE_SKEW_SECONDS,
    UPCOMING_WINDOW_HOURS,
)
from .database import connect
from .models import (
    HabitCreate,
    HabitResponse,
    NotificationResponse,
    Reminder,
    ReminderCreate,
    ReminderResponse,
    ReminderTestResponse,
    ReminderUpdate,
    TimeUntil,
    TokenResponse,
    UpcomingReminderResponse,
    UserCreate,
    UserLogin,
    UserResponse,
    as_utc,
    utcnow,
)
from .recurrence import next_fire_time
from .scheduler import ReminderScheduler
from .sender import NotificationSender
from .store import ReminderStore

logger = logging.getLogger(__name__)

# Database handle and reminder scheduler are initialized on startup.
client = None
db: Any = None
reminder_store: Optional[ReminderStore] = None
reminder_scheduler: Optional[ReminderScheduler] = None

# Create the main app without a prefix
app = FastAPI()

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

security = HTTPBearer()

# ============== AUTH HELPERS ==============

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def create_access_token(user_id: str, email: str) -> str:
    payload = {
        "user_id": user_id,
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = payload.get("user_id")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")

        user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        if user is None:
            raise HTTPException(status_code=401, detail="User not found")
        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

# ============== AUTH ROUTES ==============

@api_router.post("/auth/register", response_model=TokenResponse)
async def register(user_data: UserCreate):
    existing_user = await db.users.find_one({"email": user_data.email})
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    user_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc).isoformat()

    user_doc = {
        "id": user_id,
        "email": user_data.email,
        "name": user_data.name,
        "password": hash_password(user_data.password),
        "created_at": now
    }

    await db.users.insert_one(user_doc)

    token = create_access_token(user_id, user_data.email)

    return TokenResponse(
        access_token=token,
        user=UserResponse(
            id=user_id,
            email=user_data.email,
            name=user_data.name,
            created_at=now
        )
    )

@api_router.post("/auth/login", response_model=TokenResponse)
async def login(login_data: UserLogin):
    user = await db.users.find_one({"email": login_data.email})
    if not user or not verify_password(login_data.password, user["password"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = create_access_token(user["id"], user["email"])

    return TokenResponse(
        access_token=token,
        user=UserResponse(
            id=user["id"],
            email=user["email"],
            name=user["name"],
            created_at=user["created_at"]
        )
    )

@api_router.get("/auth/me", response_model=UserResponse)
async def get_me(current_user: dict = Depends(get_current_user)):
    return UserResponse(
        id=current_user["id"],
        email=current_user["email"],
        name=current_user["name"],
        created_at=current_user["created_at"]
    )

# ============== HABIT ROUTES ==============

@api_router.post("/habits", response_model=HabitResponse)
async def create_habit(habit_data: HabitCreate, current_user: dict = Depends(get_current_user)):
    habit_doc = {
        "id": str(uuid.uuid4()),
        "user_id": current_user["id"],
        "name": habit_data.name,
        "category": habit_data.category,
        "color": habit_data.color,
        "is_active": True,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    await db.habits.insert_one(habit_doc)

    return HabitResponse(**{k: v for k, v in habit_doc.items() if k != "_id"})

@api_router.get("/habits", response_model=List[HabitResponse])
async def get_habits(current_user: dict = Depends(get_current_user)):
    return await db.habits.find({"user_id": current_user["id"]}, {"_id": 0}).to_list(100)

@api_router.get("/habits/{habit_id}", response_model=HabitResponse)
async def get_habit(habit_id: str, current_user: dict = Depends(get_current_user)):
    habit = await db.habits.find_one({"id": habit_id, "user_id": current_user["id"]}, {"_id": 0})
    if not habit:
        raise HTTPException(status_code=404, detail="Habit not found")
    return habit

@api_router.delete("/habits/{habit_id}")
async def delete_habit(habit_id: str, current_user: dict = Depends(get_current_user)):
    # Reminders keep their habit_id; the sender copes with a missing habit.
    result = await db.habits.delete_one({"id": habit_id, "user_id": current_user["id"]})

    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Habit not found")

    return {"message": "Habit deleted successfully"}

# ============== REMINDER HELPERS ==============

def _validation_detail(error: ValidationError) -> List[Dict[str, Any]]:
    return error.errors(include_url=False, include_context=False, include_input=False)


def _reject_past_start(start_date: Optional[datetime]) -> None:
    if start_date is None:
        return
    if as_utc(start_date) < utcnow() - timedelta(seconds=START_DATE_SKEW_SECONDS):
        raise HTTPException(status_code=400, detail="Start date must be in the future")


def _reminder_response(reminder: Reminder, now: Optional[datetime] = None) -> ReminderResponse:
    return ReminderResponse(
        **reminder.model_dump(),
        next_send_time=next_fire_time(reminder, now),
        is_scheduled=reminder_scheduler.is_scheduled(reminder.id),
    )


async def _get_owned_reminder(reminder_id: str, current_user: dict) -> Reminder:
    reminder = await reminder_store.find_reminder(reminder_id, user_id=current_user["id"])
    if reminder is None:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


async def _check_habit(habit_id: str, current_user: dict) -> None:
    habit = await db.habits.find_one({"id": habit_id, "user_id": current_user["id"]})
    if not habit:
        raise HTTPException(status_code=404, detail="Habit not found")

# ============== REMINDER ROUTES ==============

@api_router.get("/reminders", response_model=List[ReminderResponse])
async def get_reminders(
    active_only: bool = True,
    habit_id: Optional[str] = None,
    current_user: dict = Depends(get_current_user),
):
    if habit_id:
        await _check_habit(habit_id, current_user)

    reminders = await reminder_store.find_reminders(
        current_user["id"], active_only=active_only, habit_id=habit_id
    )
    now = utcnow()

    logger.info("Reminders loaded: user=%s count=%s active_only=%s", current_user["id"], len(reminders), active_only)
    return [_reminder_response(r, now) for r in reminders]

@api_router.get("/reminders/upcoming", response_model=List[UpcomingReminderResponse])
async def get_upcoming_reminders(limit: int = 10, current_user: dict = Depends(get_current_user)):
    limit = max(1, min(100, limit))
    now = utcnow()
    horizon = now + timedelta(hours=UPCOMING_WINDOW_HOURS)

    reminders = await reminder_store.find_reminders(current_user["id"], active_only=True)

    upcoming = []
    for reminder in reminders:
        next_send = next_fire_time(reminder, now)
        if next_send is None or not (now < next_send <= horizon):
            continue
        upcoming.append((next_send, reminder))
    upcoming.sort(key=lambda pair: pair[0])

    results = []
    for next_send, reminder in upcoming[:limit]:
        remaining = int((next_send - now).total_seconds())
        tz = ZoneInfo(reminder.timezone)
        results.append(
            UpcomingReminderResponse(
                **_reminder_response(reminder, now).model_dump(),
                time_until=TimeUntil(hours=remaining // 3600, minutes=(remaining % 3600) // 60),
                is_today=next_send.astimezone(tz).date() == now.astimezone(tz).date(),
            )
        )
    return results

@api_router.get("/reminders/{reminder_id}", response_model=ReminderResponse)
async def get_reminder(reminder_id: str, current_user: dict = Depends(get_current_user)):
    reminder = await _get_owned_reminder(reminder_id, current_user)
    return _reminder_response(reminder)

@api_router.post("/reminders", response_model=ReminderResponse, status_code=status.HTTP_201_CREATED)
async def create_reminder(reminder_data: ReminderCreate, current_user: dict = Depends(get_current_user)):
    if reminder_data.habit_id:
        await _check_habit(reminder_data.habit_id, current_user)

    _reject_past_start(reminder_data.start_date)

    now = utcnow()
    try:
        reminder = Reminder(
            id=str(uuid.uuid4()),
            user_id=current_user["id"],
            created_at=now,
            updated_at=now,
            **reminder_data.model_dump(exclude_none=True),
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))

    await reminder_store.insert_reminder(reminder)
    await reminder_scheduler.on_reminder_created(reminder)

    logger.info(
        "Reminder created: user=%s reminder=%s frequency=%s",
        current_user["id"],
        reminder.id,
        reminder.frequency.value,
    )
    return _reminder_response(reminder)

@api_router.put("/reminders/{reminder_id}", response_model=ReminderResponse)
async def update_reminder(
    reminder_id: str,
    reminder_data: ReminderUpdate,
    current_user: dict = Depends(get_current_user),
):
    update_data = reminder_data.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=400, detail="No fields to update")

    current = await _get_owned_reminder(reminder_id, current_user)
    _reject_past_start(update_data.get("start_date"))

    merged = current.model_dump()
    merged.update(update_data)
    try:
        reminder = Reminder.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))

    # Only the sent fields are written, so a concurrent fire keeps its last_fired_at
    document = reminder.to_document()
    changed = set(update_data)
    if "frequency" in changed:
        changed.add("days_of_week")
    if not await reminder_store.update_reminder(reminder_id, {k: document[k] for k in changed}):
        raise HTTPException(status_code=404, detail="Reminder not found")
    reminder = await reminder_store.find_reminder(reminder_id) or reminder
    await reminder_scheduler.on_reminder_updated(reminder)

    logger.info("Reminder updated: user=%s reminder=%s changes=%s", current_user["id"], reminder_id, sorted(update_data))
    return _reminder_response(reminder)

@api_router.delete("/reminders/{reminder_id}")
async def delete_reminder(reminder_id: str, current_user: dict = Depends(get_current_user)):
    reminder = await _get_owned_reminder(reminder_id, current_user)

    reminder_scheduler.on_reminder_deleted(reminder_id)
    await reminder_store.delete_reminder(reminder_id)

    logger.info("Reminder deleted: user=%s reminder=%s title=%s", current_user["id"], reminder_id, reminder.title)
    return {"message": "Reminder deleted successfully", "id": reminder_id}

@api_router.post("/reminders/{reminder_id}/toggle", response_model=ReminderResponse)
async def toggle_reminder(reminder_id: str, current_user: dict = Depends(get_current_user)):
    reminder = await _get_owned_reminder(reminder_id, current_user)
    reminder.is_active = not reminder.is_active

    await reminder_store.update_reminder(reminder_id, {"is_active": reminder.is_active})
    await reminder_scheduler.on_reminder_toggled(reminder)

    logger.info("Reminder toggled: user=%s reminder=%s is_active=%s", current_user["id"], reminder_id, reminder.is_active)
    return _reminder_response(reminder)

@api_router.post("/reminders/{reminder_id}/test", response_model=ReminderTestResponse)
async def test_reminder(reminder_id: str, current_user: dict = Depends(get_current_user)):
    reminder = await _get_owned_reminder(reminder_id, current_user)
    outcome = await reminder_scheduler.send_test_now(reminder)

    logger.info("Test reminder sent: user=%s reminder=%s channel=%s", current_user["id"], reminder_id, reminder.channel.value)
    return ReminderTestResponse(
        channel=reminder.channel,
        sent_at=outcome.sent_at,
        delivered=outcome.delivered,
        error=outcome.error,
    )

# ============== NOTIFICATION ROUTES ==============

@api_router.get("/notifications", response_model=List[NotificationResponse])
async def get_notifications(limit: int = 50, current_user: dict = Depends(get_current_user)):
    limit = max(1, min(200, limit))
    return await db.notifications.find(
        {"user_id": current_user["id"]},
        {"_id": 0},
    ).sort("created_at", -1).to_list(limit)

# ============== BASIC ROUTES ==============

@api_router.get("/")
async def root():
    return {"message": "FocusFlow Habit Tracker API"}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}

# Include the router in the main app
app.include_router(api_router)

cors_origins = [o.strip() for o in CORS_ORIGINS.split(',') if o.strip()]
if not cors_origins:
    cors_origins = ['*']
cors_allow_all = len(cors_origins) == 1 and cors_origins[0] == '*'

app.add_middleware(
    CORSMiddleware,
    # Avoid using '*' with credentials. In production, set CORS_ORIGINS to your frontend URL(s).
    allow_credentials=not cors_allow_all,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@app.on_event("startup")
async def startup_db_client():
    global client, db, reminder_store, reminder_scheduler

    if IS_PROD and JWT_SECRET_SOURCE == "default":
        raise RuntimeError("JWT_SECRET must be set in production (refusing to start with default secret).")
    if JWT_SECRET_SOURCE == "default":
        logger.warning("JWT_SECRET not set; using insecure default. Set JWT_SECRET for persistent logins and security.")

    client, db = await connect()

    # Timers are not persisted: rebuild them from the active reminders.
    reminder_store = ReminderStore(db.reminders)
    reminder_scheduler = ReminderScheduler(reminder_store, NotificationSender(db))
    reminder_scheduler.start()
    await reminder_scheduler.bootstrap()

@app.on_event("shutdown")
async def shutdown_db_client():
    global client, reminder_scheduler
    if reminder_scheduler is not None:
        reminder_scheduler.shutdown()
        reminder_scheduler = None
    if client is not None:
        client.close()
        client = None
