import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Path, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

import database
from book import Book, User
from circulation import BorrowingManager
from config import settings
from errors import Conflict, IntegrityFault, NotFound, StoreUnavailable
from library import Library
from loan import Loan
from scheduler import OverdueSweeper

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


# --- Models ---
class BookModel(BaseModel):
    id: int
    isbn: str
    title: str
    author: str
    description: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    total_copies: int
    available_copies: int
    created_at: Optional[str] = None


class BookCreateModel(BaseModel):
    isbn: str
    title: str
    author: str
    total_copies: int = Field(default=1, ge=0)
    description: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None


class UpdateBookModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None


class CopiesUpdateModel(BaseModel):
    total_copies: int = Field(..., ge=0)


class PaginatedBooksResponse(BaseModel):
    books: List[BookModel]
    total: int
    page: int
    page_size: int
    total_pages: int


class UserModel(BaseModel):
    id: int
    username: str
    email: str
    role: str
    created_at: Optional[str] = None


class UserCreateModel(BaseModel):
    username: str
    email: str
    role: str = "MEMBER"


class LoanModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    status: str


class PaginatedLoansResponse(BaseModel):
    loans: List[LoanModel]
    total: int
    page: int
    page_size: int
    total_pages: int


class SweepResponse(BaseModel):
    transitioned: int
    swept_at: datetime


class StatsModel(BaseModel):
    total_books: int
    unique_authors: int
    total_copies: int
    available_copies: int
    open_loans: int
    overdue_loans: int
    members: int


def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _loan_model(loan: Loan) -> LoanModel:
    return LoanModel(
        id=loan.id,
        user_id=loan.user_id,
        book_id=loan.book_id,
        borrowed_at=loan.borrowed_at,
        due_at=loan.due_at,
        returned_at=loan.returned_at,
        status=loan.status.value,
    )


# --- Dependencies ---
def get_library(request: Request) -> Library:
    return request.app.state.library


def get_manager(request: Request) -> BorrowingManager:
    return request.app.state.manager


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Admin capability: the caller must present the configured API key."""
    if api_key and api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def is_admin(api_key: Optional[str] = Security(api_key_header)) -> bool:
    return api_key is not None and api_key == settings.api_key


def get_current_user(user_id: Optional[str] = Security(user_id_header),
                     library: Library = Depends(get_library)) -> User:
    """Member identity, as established by the upstream identity provider."""
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    try:
        uid = int(user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="X-User-Id must be an integer")
    user = library.find_user(uid)
    if user is None:
        raise HTTPException(status_code=401, detail=f"Unknown user {uid}")
    return user


def get_optional_user(user_id: Optional[str] = Security(user_id_header),
                      admin: bool = Depends(is_admin),
                      library: Library = Depends(get_library)) -> Optional[User]:
    # The API key alone is enough; a user header next to it is not resolved
    if admin or not user_id:
        return None
    return get_current_user(user_id, library)


router = APIRouter()


# --- Health ---
@router.get("/health")
def health(request: Request):
    """Lightweight health endpoint; tries a database round trip."""
    db_ok = True
    try:
        conn = database.get_db_connection(request.app.state.library.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    sweeper: OverdueSweeper = request.app.state.sweeper
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": database.utc_now().isoformat(),
        "db": db_ok,
        "sweeper": {
            "running": sweeper.running,
            "last_run": sweeper.last_run.isoformat() if sweeper.last_run else None,
            "last_count": sweeper.last_count,
        },
    }


# --- Books ---
@router.get("/books", response_model=PaginatedBooksResponse)
def get_books(
    query: Optional[str] = Query(None, description="Matches title, author, ISBN, genre, publisher or description"),
    title: Optional[str] = None,
    author: Optional[str] = None,
    genre: Optional[str] = None,
    publisher: Optional[str] = None,
    publication_year: Optional[int] = None,
    year_from: Optional[int] = None,
    year_to: Optional[int] = None,
    available_only: bool = False,
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
):
    """Search the catalog; with no filters, list every book by title."""
    try:
        result = library.search_books(
            query=query, title=title, author=author, genre=genre, publisher=publisher,
            publication_year=publication_year, year_from=year_from, year_to=year_to,
            available_only=available_only, page=page, page_size=page_size,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PaginatedBooksResponse(
        books=[_book_model(b) for b in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@router.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, library: Library = Depends(get_library)):
    return _book_model(library.get_book(book_id))


@router.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    try:
        book = library.add_book(Book(**payload.model_dump()))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _book_model(book)


@router.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: int, update: UpdateBookModel, library: Library = Depends(get_library)):
    try:
        book = library.update_book(book_id, **update.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _book_model(book)


@router.put("/books/{book_id}/copies", response_model=BookModel, dependencies=[Depends(get_api_key)])
def set_book_copies(book_id: int, update: CopiesUpdateModel, library: Library = Depends(get_library)):
    """Change the number of physical copies; copies on loan stay on loan."""
    return _book_model(library.set_total_copies(book_id, update.total_copies))


@router.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int, library: Library = Depends(get_library)):
    if not library.remove_book(book_id):
        raise HTTPException(status_code=404, detail=f"Book {book_id} not found")
    return {"message": f"Book {book_id} deleted"}


@router.post("/books/{book_id}/borrow", response_model=LoanModel, status_code=201)
def borrow_book_alias(
    book_id: int,
    user: User = Depends(get_current_user),
    manager: BorrowingManager = Depends(get_manager),
):
    return _loan_model(manager.borrow(user.id, book_id))


# --- Users ---
@router.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def register_user(payload: UserCreateModel, library: Library = Depends(get_library)):
    try:
        user = library.register_user(payload.username, payload.email, payload.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserModel(**user.to_dict())


# --- Borrowings ---
@router.post("/borrowings/borrow/{book_id}", response_model=LoanModel, status_code=201)
def borrow_book(
    book_id: int = Path(..., description="ID of the book to borrow"),
    user: User = Depends(get_current_user),
    manager: BorrowingManager = Depends(get_manager),
):
    """Borrow one copy for the calling member; due back in 14 days."""
    return _loan_model(manager.borrow(user.id, book_id))


@router.post("/borrowings/return/{loan_id}", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def return_book(
    loan_id: int = Path(..., description="ID of the loan to close"),
    manager: BorrowingManager = Depends(get_manager),
):
    """Check a copy back in.  A loan can only be returned once."""
    return _loan_model(manager.return_loan(loan_id))


def _loan_page(manager: BorrowingManager, user_id: int, page: int, page_size: int) -> PaginatedLoansResponse:
    result = manager.loans_for_user(user_id, page=page, page_size=page_size)
    return PaginatedLoansResponse(
        loans=[_loan_model(l) for l in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@router.get("/borrowings/my", response_model=PaginatedLoansResponse)
def get_my_borrowings(
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    user: User = Depends(get_current_user),
    manager: BorrowingManager = Depends(get_manager),
):
    return _loan_page(manager, user.id, page, page_size)


@router.get("/borrowings/user/{user_id}", response_model=PaginatedLoansResponse,
            dependencies=[Depends(get_api_key)])
def get_user_borrowings(
    user_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    manager: BorrowingManager = Depends(get_manager),
):
    return _loan_page(manager, user_id, page, page_size)


@router.get("/borrowings/book/{book_id}", response_model=List[LoanModel])
def get_book_borrowings(
    book_id: int,
    user: User = Depends(get_current_user),
    manager: BorrowingManager = Depends(get_manager),
):
    return [_loan_model(l) for l in manager.loans_for_book(book_id)]


@router.post("/borrowings/check-overdue", response_model=SweepResponse, dependencies=[Depends(get_api_key)])
def check_overdue_borrowings(request: Request):
    """Run the overdue sweep now instead of waiting for the next scheduled tick."""
    sweeper: OverdueSweeper = request.app.state.sweeper
    count = sweeper.run_once()
    return SweepResponse(transitioned=count, swept_at=sweeper.last_run)


@router.get("/borrowings/{loan_id}", response_model=LoanModel)
def get_borrowing(
    loan_id: int,
    user: Optional[User] = Depends(get_optional_user),
    admin: bool = Depends(is_admin),
    manager: BorrowingManager = Depends(get_manager),
):
    """A single loan, visible to its borrower and to admins."""
    if not admin and user is None:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    loan = manager.get_loan(loan_id)
    if not admin and not user.is_admin and loan.user_id != user.id:
        raise HTTPException(status_code=403, detail="Insufficient permissions to view this loan")
    return _loan_model(loan)


# --- Statistics ---
@router.get("/stats", response_model=StatsModel)
def get_library_stats(library: Library = Depends(get_library)):
    return StatsModel(**library.get_statistics())


@router.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version, "docs": "/docs"}


# --- Error mapping ---
def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc), "entity": exc.entity})

    @app.exception_handler(Conflict)
    async def conflict_handler(request: Request, exc: Conflict):
        return JSONResponse(status_code=409, content={"detail": exc.detail, "reason": exc.reason.value})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        return JSONResponse(
            status_code=503,
            content={"detail": "Service temporarily unavailable, retry the request"},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(IntegrityFault)
    async def integrity_fault_handler(request: Request, exc: IntegrityFault):
        logger.critical(f"Integrity fault on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal data integrity error"})


def create_app(db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None,
               sweep_enabled: Optional[bool] = None) -> FastAPI:
    """Build the application around one catalog, one borrowing manager and one sweeper."""
    library = Library(db_file)
    manager = BorrowingManager(db_file, clock=clock)
    sweeper = OverdueSweeper(manager)
    run_sweeper = settings.sweep_enabled if sweep_enabled is None else sweep_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_sweeper:
            sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.library = library
    app.state.manager = manager
    app.state.sweeper = sweeper

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_response_headers(request: Request, call_next):
        response = await call_next(request)
        # Loan state changes on every borrow/return, never cache it
        if request.url.path.startswith("/borrowings"):
            response.headers["Cache-Control"] = "no-store"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    _register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
