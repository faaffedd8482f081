import logging
import tomllib
from datetime import date, datetime
from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import (
    HTMLResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError as PayloadError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from auth import AdminRequired, LoginRequired, login, logout, user_from_session
from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import parse_amount
from database import SessionLocal
from errors import NotFoundError
from models import TypeOfFlow, User
from periods import local_today, month_range, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    ByTypeReportIn,
    CategoryIn,
    PayingItemIn,
    ProductIn,
    ProductLineIn,
    RegisterIn,
    RoleIn,
    RoleModificationIn,
    TransferIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    CSVService,
    PayingItemFilters,
    PayingItemService,
    PlanService,
    ProductService,
    ReportService,
    RoleService,
    UserService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Home Accounting")
app.add_middleware(
    SessionMiddleware,
    secret_key=get_settings().secret_key,
    session_cookie="homeacc_session",
    same_site="lax",
)
app.mount("/static", StaticFiles(directory="static"), name="static")
templates = Jinja2Templates(directory="templates")


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, ValueError):
        return "unknown"


APP_VERSION = _load_app_version()


def format_currency(cents: int) -> str:
    return f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")


def format_amount_input(cents: int) -> str:
    return f"{cents / 100:.2f}"


templates.env.filters["currency"] = format_currency
templates.env.filters["amount_input"] = format_amount_input
templates.env.globals["TypeOfFlow"] = TypeOfFlow
templates.env.globals["csrf_token"] = generate_csrf_token
templates.env.globals["app_version"] = APP_VERSION
templates.env.globals["admin_role"] = get_settings().admin_role


def static_path(path: str) -> str:
    return app.url_path_for("static", path=path)


templates.env.globals["static_path"] = static_path


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(request: Request, db: Session = Depends(get_db)) -> User:
    user = user_from_session(request.session, db)
    if user is None:
        raise LoginRequired()
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if not user.has_role(get_settings().admin_role):
        raise AdminRequired()
    return user


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LoginRequired)
async def login_required_handler(request: Request, exc: LoginRequired):
    if request.headers.get("HX-Request"):
        return Response(status_code=401, headers={"HX-Redirect": "/login"})
    return RedirectResponse(url="/login", status_code=303)


@app.exception_handler(AdminRequired)
async def admin_required_handler(request: Request, exc: AdminRequired):
    return render(
        request, "error.html", {"errors": ["Access denied"]}, status_code=403
    )


def is_htmx(request: Request) -> bool:
    return bool(request.headers.get("HX-Request"))


def render(
    request: Request,
    template: str,
    context: dict[str, object],
    status_code: int = 200,
) -> HTMLResponse:
    return templates.TemplateResponse(
        request, template, context, status_code=status_code
    )


def render_page(
    request: Request, page: str, partial: str, context: dict[str, object]
) -> HTMLResponse:
    """Render ``partial`` for htmx callers and the full ``page`` otherwise."""
    return render(request, partial if is_htmx(request) else page, context)


def redirect_or_trigger(request: Request, url: str, event: str) -> Response:
    headers = {"HX-Trigger": event}
    if is_htmx(request):
        return Response(status_code=204, headers=headers)
    return RedirectResponse(url=url, status_code=303, headers=headers)


async def checked_form(request: Request, user_id: int = 0):
    form = await request.form()
    if not validate_csrf_token(str(form.get("csrf_token", "")), user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    return form


def not_found_or_bad_request(exc: ValueError) -> HTTPException:
    status = 404 if isinstance(exc, NotFoundError) else 400
    return HTTPException(status_code=status, detail=str(exc))


def parse_page(request: Request) -> int:
    try:
        return max(int(request.query_params.get("page", "1")), 1)
    except ValueError:
        return 1


def parse_flow(value: Optional[str]) -> Optional[TypeOfFlow]:
    if not value:
        return None
    if value.isdigit():
        return TypeOfFlow.from_id(int(value))
    try:
        return TypeOfFlow(value)
    except ValueError:
        return None


def parse_iso_date(value: Optional[str], field_name: str) -> date:
    if not value:
        raise HTTPException(status_code=400, detail=f"Missing {field_name}")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}") from exc


def parse_month(value: Optional[str]) -> tuple[int, int]:
    today = local_today()
    if not value:
        return today.year, today.month
    try:
        year_str, month_str = value.split("-", 1)
        year, month = int(year_str), int(month_str)
        date(year, month, 1)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid month") from exc
    return year, month


def filters_from_request(request: Request) -> PayingItemFilters:
    def _int(name: str) -> Optional[int]:
        raw = request.query_params.get(name)
        try:
            return int(raw) if raw else None
        except ValueError:
            return None

    return PayingItemFilters(
        type_of_flow=parse_flow(request.query_params.get("type")),
        category_id=_int("category"),
        account_id=_int("account"),
        query=request.query_params.get("q") or None,
    )


def paying_item_payload_from_form(form) -> PayingItemIn:
    lines: list[ProductLineIn] = []
    for product_id, summ in zip(
        form.getlist("line_product_id"), form.getlist("line_summ")
    ):
        if not product_id or not str(summ).strip():
            continue
        lines.append(
            ProductLineIn(product_id=int(product_id), summ_cents=parse_amount(summ))
        )
    summ_raw = str(form.get("summ") or "").strip()
    return PayingItemIn(
        category_id=int(form["category_id"]),
        account_id=int(form["account_id"]),
        date=date.fromisoformat(form["date"]),
        summ_cents=parse_amount(summ_raw) if summ_raw else 0,
        comment=form.get("comment") or None,
        product_lines=lines,
    )


# --- identity -----------------------------------------------------------


@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    return render(request, "login.html", {"user": None, "errors": []})


@app.post("/login")
async def login_submit(request: Request, db: Session = Depends(get_db)):
    form = await checked_form(request)
    email = str(form.get("email") or "")
    user = UserService(db).authenticate(email, str(form.get("password") or ""))
    if user is None:
        logger.info("login_failed")
        return render(
            request,
            "login.html",
            {"user": None, "errors": ["Invalid email or password"], "email": email},
            status_code=400,
        )
    login(request.session, user)
    return RedirectResponse(url=app.url_path_for("dashboard"), status_code=303)


@app.get("/register", response_class=HTMLResponse)
def register_page(request: Request):
    return render(request, "register.html", {"user": None, "errors": []})


@app.post("/register")
async def register_submit(request: Request, db: Session = Depends(get_db)):
    form = await checked_form(request)
    try:
        data = RegisterIn(
            email=str(form.get("email") or ""),
            name=str(form.get("name") or ""),
            password=str(form.get("password") or ""),
        )
        user = UserService(db).register(data)
    except PayloadError as exc:
        errors = [err["msg"] for err in exc.errors()]
        return render(
            request, "register.html", {"user": None, "errors": errors}, status_code=400
        )
    except ValueError as exc:
        return render(
            request,
            "register.html",
            {"user": None, "errors": [str(exc)]},
            status_code=400,
        )
    login(request.session, user)
    return RedirectResponse(url=app.url_path_for("dashboard"), status_code=303)


@app.post("/logout")
async def logout_submit(request: Request, user: User = Depends(current_user)):
    await checked_form(request, user.id)
    logout(request.session)
    return RedirectResponse(url="/login", status_code=303)


# --- dashboard and navigation panels -----------------------------------


@app.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    budgets = BudgetService(db, user.id)
    recent, _ = PayingItemService(db, user.id).list(
        resolve_period("this_month", None, None)
    )
    return render(
        request,
        "dashboard.html",
        {
            "user": user,
            "accounts": AccountService(db, user.id).list_all(),
            "budget": budgets.budget(),
            "incoming": budgets.incoming(),
            "outgo": budgets.outgo(),
            "recent": recent,
        },
    )


@app.get("/components/nav-left/accounts", response_class=HTMLResponse)
def nav_left_accounts(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    accounts = AccountService(db, user.id).list_all()
    return render(request, "components/nav_accounts.html", {"accounts": accounts})


@app.get("/components/nav-left/budget", response_class=HTMLResponse)
def nav_left_budget(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    budget = BudgetService(db, user.id).budget()
    return render(request, "components/nav_budget.html", {"budget": budget})


@app.get("/components/nav-right/{flow}", response_class=HTMLResponse)
def nav_right_menu(
    flow: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    type_of_flow = parse_flow(flow)
    if type_of_flow is None:
        raise HTTPException(status_code=404, detail="Unknown type of flow")
    budgets = BudgetService(db, user.id)
    model = (
        budgets.incoming() if type_of_flow == TypeOfFlow.income else budgets.outgo()
    )
    return render(
        request,
        "components/nav_flow_budget.html",
        {"model": model, "type_of_flow": type_of_flow},
    )


# --- accounts -------------------------------------------------------------


@app.get("/accounts", response_class=HTMLResponse)
def accounts_page(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    accounts = AccountService(db, user.id).list_all()
    message = request.query_params.get("message")
    return render_page(
        request,
        "accounts.html",
        "components/account_list.html",
        {"user": user, "accounts": accounts, "message": message},
    )


@app.get("/accounts/add", response_class=HTMLResponse)
def add_account_page(request: Request, user: User = Depends(current_user)):
    return render_page(
        request,
        "account_form.html",
        "components/account_form.html",
        {"user": user, "account": None, "errors": []},
    )


@app.post("/accounts/add")
async def add_account(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    try:
        data = AccountIn(
            name=str(form.get("name") or ""),
            cash_cents=parse_amount(str(form.get("cash") or "0"), allow_negative=True),
        )
        AccountService(db, user.id).create(data)
    except (PayloadError, ValueError) as exc:
        return render_page(
            request,
            "account_form.html",
            "components/account_form.html",
            {"user": user, "account": None, "errors": [str(exc)]},
        )
    return redirect_or_trigger(request, "/accounts", "accounts-changed")


@app.get("/accounts/transfer", response_class=HTMLResponse)
def transfer_page(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    accounts = AccountService(db, user.id).list_all()
    return render_page(
        request,
        "transfer.html",
        "components/transfer_form.html",
        {
            "user": user,
            "from_accounts": accounts,
            "to_accounts": accounts[1:],
            "errors": [],
        },
    )


@app.post("/accounts/transfer")
async def transfer_money(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    service = AccountService(db, user.id)
    try:
        data = TransferIn(
            from_id=int(form.get("from_id") or 0),
            to_id=int(form.get("to_id") or 0),
            summ=str(form.get("summ") or ""),
        )
        service.transfer(data)
    except PayloadError:
        errors = ["Enter a valid amount to transfer"]
    except ValueError as exc:
        errors = [str(exc)]
    else:
        return redirect_or_trigger(request, "/accounts", "accounts-changed")
    accounts = service.list_all()
    return render_page(
        request,
        "transfer.html",
        "components/transfer_form.html",
        {
            "user": user,
            "from_accounts": accounts,
            "to_accounts": accounts[1:],
            "errors": errors,
        },
    )


@app.get("/accounts/{account_id}/others", response_class=HTMLResponse)
def other_accounts(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    accounts = AccountService(db, user.id).others(account_id)
    return render(request, "components/account_options.html", {"accounts": accounts})


@app.get("/accounts/{account_id}/edit", response_class=HTMLResponse)
def edit_account_page(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    # unknown ids fall back to a blank form
    account = AccountService(db, user.id).find(account_id)
    return render_page(
        request,
        "account_form.html",
        "components/account_form.html",
        {"user": user, "account": account, "errors": []},
    )


@app.post("/accounts/{account_id}/edit")
async def edit_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    if account_id <= 0:
        return redirect_or_trigger(request, "/accounts", "accounts-changed")
    service = AccountService(db, user.id)
    try:
        data = AccountIn(
            name=str(form.get("name") or ""),
            cash_cents=parse_amount(str(form.get("cash") or "0"), allow_negative=True),
        )
        service.update(account_id, data)
    except NotFoundError:
        return redirect_or_trigger(request, "/accounts", "accounts-changed")
    except (PayloadError, ValueError) as exc:
        return render_page(
            request,
            "account_form.html",
            "components/account_form.html",
            {"user": user, "account": service.find(account_id), "errors": [str(exc)]},
        )
    return redirect_or_trigger(request, "/accounts", "accounts-changed")


@app.post("/accounts/{account_id}/delete")
async def delete_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    await checked_form(request, user.id)
    url = "/accounts"
    try:
        AccountService(db, user.id).delete(account_id)
    except ValueError as exc:
        url = f"/accounts?{urlencode({'message': str(exc)})}"
    return RedirectResponse(
        url=url, status_code=303, headers={"HX-Trigger": "accounts-changed"}
    )


# --- categories and products -------------------------------------------


@app.get("/categories/{flow}", response_class=HTMLResponse)
def categories_page(
    flow: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    type_of_flow = parse_flow(flow)
    if type_of_flow is None:
        raise HTTPException(status_code=404, detail="Unknown type of flow")
    model = CategoryService(db, user.id).list_by_type(type_of_flow, parse_page(request))
    return render_page(
        request,
        "categories.html",
        "components/category_list.html",
        {"user": user, "model": model, "message": request.query_params.get("message")},
    )


def category_payload_from_form(form) -> CategoryIn:
    return CategoryIn(
        name=str(form.get("name") or ""),
        type_of_flow=TypeOfFlow(str(form.get("type_of_flow") or "")),
        active=form.get("active", "on") == "on",
    )


@app.post("/categories")
async def create_category(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    try:
        data = category_payload_from_form(form)
        category = CategoryService(db, user.id).create(data)
    except (PayloadError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return redirect_or_trigger(
        request, f"/categories/{category.type_of_flow.value}", "categories-changed"
    )


@app.get("/categories/{category_id}/edit", response_class=HTMLResponse)
def edit_category_page(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        category = CategoryService(db, user.id).get(category_id)
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    return render(
        request, "category_edit.html", {"user": user, "category": category, "errors": []}
    )


@app.post("/categories/{category_id}/edit")
async def edit_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    service = CategoryService(db, user.id)
    try:
        data = category_payload_from_form(form)
        category = service.update(category_id, data)
    except NotFoundError as exc:
        raise not_found_or_bad_request(exc) from exc
    except (PayloadError, ValueError) as exc:
        return render(
            request,
            "category_edit.html",
            {"user": user, "category": service.get(category_id), "errors": [str(exc)]},
            status_code=400,
        )
    return redirect_or_trigger(
        request, f"/categories/{category.type_of_flow.value}", "categories-changed"
    )


@app.post("/categories/{category_id}/toggle")
async def toggle_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    try:
        CategoryService(db, user.id).set_active(
            category_id, form.get("active") == "true"
        )
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    return Response(status_code=204, headers={"HX-Trigger": "categories-changed"})


@app.post("/categories/{category_id}/delete")
async def delete_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    await checked_form(request, user.id)
    service = CategoryService(db, user.id)
    try:
        category = service.get(category_id)
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    url = f"/categories/{category.type_of_flow.value}"
    try:
        service.delete(category_id)
    except ValueError as exc:
        url = f"{url}?{urlencode({'message': str(exc)})}"
    return RedirectResponse(
        url=url, status_code=303, headers={"HX-Trigger": "categories-changed"}
    )


@app.get("/categories/{category_id}/products", response_class=HTMLResponse)
def products_page(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        category = CategoryService(db, user.id).get(category_id)
        products = ProductService(db, user.id).list_for_category(category_id)
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    return render_page(
        request,
        "products.html",
        "components/product_list.html",
        {
            "user": user,
            "category": category,
            "products": products,
            "message": request.query_params.get("message"),
        },
    )


def product_payload_from_form(form) -> ProductIn:
    return ProductIn(
        category_id=int(form["category_id"]),
        name=str(form.get("name") or ""),
        description=form.get("description") or None,
    )


@app.post("/products")
async def create_product(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    try:
        product = ProductService(db, user.id).create(product_payload_from_form(form))
    except (KeyError, PayloadError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return redirect_or_trigger(
        request, f"/categories/{product.category_id}/products", "products-changed"
    )


@app.post("/products/{product_id}/edit")
async def edit_product(
    product_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    try:
        product = ProductService(db, user.id).update(
            product_id, product_payload_from_form(form)
        )
    except NotFoundError as exc:
        raise not_found_or_bad_request(exc) from exc
    except (KeyError, PayloadError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return redirect_or_trigger(
        request, f"/categories/{product.category_id}/products", "products-changed"
    )


@app.post("/products/{product_id}/delete")
async def delete_product(
    product_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    await checked_form(request, user.id)
    service = ProductService(db, user.id)
    try:
        product = service.get(product_id)
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    url = f"/categories/{product.category_id}/products"
    try:
        service.delete(product_id)
    except ValueError as exc:
        url = f"{url}?{urlencode({'message': str(exc)})}"
    return RedirectResponse(
        url=url, status_code=303, headers={"HX-Trigger": "products-changed"}
    )


# --- paying items ---------------------------------------------------------


def paying_item_form_context(
    db: Session, user: User, type_of_flow: TypeOfFlow, **extra
) -> dict[str, object]:
    categories = CategoryService(db, user.id).list_active(type_of_flow)
    products = {
        c.id: [{"id": p.id, "name": p.name} for p in c.products] for c in categories
    }
    ctx: dict[str, object] = {
        "user": user,
        "type_of_flow": type_of_flow,
        "categories": categories,
        "products_by_category": products,
        "accounts": AccountService(db, user.id).list_all(),
        "today": local_today(),
        "errors": [],
        "item": None,
    }
    ctx.update(extra)
    return ctx


@app.get("/paying-items", response_class=HTMLResponse)
def paying_items_page(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        period = resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    filters = filters_from_request(request)
    items, paging = PayingItemService(db, user.id).list(
        period, filters, parse_page(request)
    )
    filter_params: dict[str, str] = {
        "period": period.slug,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
    }
    if filters.type_of_flow:
        filter_params["type"] = filters.type_of_flow.value
    if filters.category_id:
        filter_params["category"] = str(filters.category_id)
    if filters.account_id:
        filter_params["account"] = str(filters.account_id)
    if filters.query:
        filter_params["q"] = filters.query
    return render_page(
        request,
        "paying_items.html",
        "components/paying_item_list.html",
        {
            "user": user,
            "period": period,
            "filters": filters,
            "items": items,
            "paging_info": paging,
            "filter_query": urlencode(filter_params),
            "categories": CategoryService(db, user.id).list_all(),
            "accounts": AccountService(db, user.id).list_all(),
        },
    )


@app.get("/paying-items/add", response_class=HTMLResponse)
def add_paying_item_page(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    type_of_flow = parse_flow(request.query_params.get("type")) or TypeOfFlow.outgo
    return render_page(
        request,
        "paying_item_form.html",
        "components/paying_item_form.html",
        paying_item_form_context(db, user, type_of_flow),
    )


@app.post("/paying-items")
async def create_paying_item(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    type_of_flow = parse_flow(str(form.get("type_of_flow") or "")) or TypeOfFlow.outgo
    try:
        data = paying_item_payload_from_form(form)
        PayingItemService(db, user.id).create(data)
    except (KeyError, PayloadError, ValueError) as exc:
        return render_page(
            request,
            "paying_item_form.html",
            "components/paying_item_form.html",
            paying_item_form_context(db, user, type_of_flow, errors=[str(exc)]),
        )
    return redirect_or_trigger(request, "/paying-items", "paying-items-changed")


@app.get("/paying-items/export.csv")
def export_paying_items_endpoint(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        period = resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    items = PayingItemService(db, user.id).all_in_dates(
        period.start, period.end, filters_from_request(request)
    )
    csv_text = CSVService(db, user.id).export(items)
    filename = f"paying_items_{period.start}_{period.end}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/paying-items/import/preview", response_class=HTMLResponse)
async def import_preview(
    request: Request,
    csrf_token: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    if not validate_csrf_token(csrf_token, user.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    content = (await file.read()).decode("utf-8")
    rows, errors = CSVService(db, user.id).preview(content)
    return render(
        request, "components/csv_preview.html", {"rows": rows, "errors": errors}
    )


@app.post("/paying-items/import/commit")
async def import_commit(
    request: Request,
    csrf_token: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    if not validate_csrf_token(csrf_token, user.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    content = (await file.read()).decode("utf-8")
    try:
        count = CSVService(db, user.id).commit(content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    headers = {"HX-Trigger": "paying-items-changed"}
    return Response(status_code=200, content=f"Imported {count} rows.", headers=headers)


@app.get("/paying-items/{item_id}/edit", response_class=HTMLResponse)
def edit_paying_item_page(
    item_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        item = PayingItemService(db, user.id).get(item_id)
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    return render_page(
        request,
        "paying_item_form.html",
        "components/paying_item_form.html",
        paying_item_form_context(db, user, item.category.type_of_flow, item=item),
    )


@app.post("/paying-items/{item_id}/edit")
async def edit_paying_item(
    item_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    service = PayingItemService(db, user.id)
    try:
        item = service.get(item_id)
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    type_of_flow = item.category.type_of_flow
    try:
        service.update(item_id, paying_item_payload_from_form(form))
    except (KeyError, PayloadError, ValueError) as exc:
        db.rollback()
        return render_page(
            request,
            "paying_item_form.html",
            "components/paying_item_form.html",
            paying_item_form_context(
                db, user, type_of_flow, item=service.get(item_id), errors=[str(exc)]
            ),
        )
    return redirect_or_trigger(request, "/paying-items", "paying-items-changed")


@app.post("/paying-items/{item_id}/delete")
async def delete_paying_item(
    item_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    await checked_form(request, user.id)
    try:
        PayingItemService(db, user.id).delete(item_id)
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    return redirect_or_trigger(request, "/paying-items", "paying-items-changed")


# --- planning -------------------------------------------------------------


@app.get("/plan", response_class=HTMLResponse)
def plan_page(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    year, month = parse_month(request.query_params.get("month"))
    view = PlanService(db, user.id).month_view(year, month)
    return render(
        request,
        "plan.html",
        {"user": user, "view": view, "month_value": f"{year:04d}-{month:02d}"},
    )


@app.post("/plan/ensure")
async def ensure_plan(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    year, month = parse_month(str(form.get("month") or ""))
    try:
        months = min(max(int(form.get("months") or 12), 1), 36)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid months") from exc
    PlanService(db, user.id).ensure_plan(date(year, month, 1), months)
    return RedirectResponse(url=f"/plan?month={year:04d}-{month:02d}", status_code=303)


@app.post("/plan/items/{item_id}")
async def update_plan_item(
    item_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await checked_form(request, user.id)
    service = PlanService(db, user.id)
    try:
        item = service.set_plan_sum(item_id, parse_amount(str(form.get("summ") or "0")))
    except ValueError as exc:
        raise not_found_or_bad_request(exc) from exc
    month_value = item.month.strftime("%Y-%m")
    return redirect_or_trigger(request, f"/plan?month={month_value}", "plan-changed")


# --- reports --------------------------------------------------------------


def flow_name(type_of_flow_id: int) -> str:
    return TypeOfFlow.from_id(type_of_flow_id).label


@app.get("/reports", response_class=HTMLResponse)
def reports_index(request: Request, user: User = Depends(current_user)):
    return render(request, "reports/index.html", {"user": user})


@app.get("/reports/by-type/{type_of_flow_id}", response_class=HTMLResponse)
def report_by_type_form(
    type_of_flow_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    type_of_flow = TypeOfFlow.from_id(type_of_flow_id)
    categories = ReportService(db, user.id).categories_by_type(type_of_flow)
    today = local_today()
    return render(
        request,
        "reports/by_type_form.html",
        {
            "user": user,
            "type_of_flow": type_of_flow,
            "categories": categories,
            "date_from": today.replace(day=1),
            "date_to": today,
        },
    )


@app.get("/reports/by-type", response_class=HTMLResponse)
def report_by_type(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    params = request.query_params
    try:
        data = ByTypeReportIn(
            category_id=int(params.get("category_id") or 0),
            date_from=parse_iso_date(params.get("date_from"), "date_from"),
            date_to=parse_iso_date(params.get("date_to"), "date_to"),
        )
    except (PayloadError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        model = ReportService(db, user.id).by_type_report(data, parse_page(request))
    except NotFoundError as exc:
        raise not_found_or_bad_request(exc) from exc
    except ValueError as exc:
        return render(request, "components/error_view.html", {"errors": [str(exc)]})
    query = urlencode(
        {
            "category_id": data.category_id,
            "date_from": data.date_from.isoformat(),
            "date_to": data.date_to.isoformat(),
        }
    )
    return render(
        request, "components/report_by_type.html", {"model": model, "query": query}
    )


@app.get("/reports/by-dates", response_class=HTMLResponse)
def report_by_dates_form(request: Request, user: User = Depends(current_user)):
    today = local_today()
    return render(
        request,
        "reports/by_dates_form.html",
        {"user": user, "date_from": today.replace(day=1), "date_to": today},
    )


@app.get("/reports/by-dates/result", response_class=HTMLResponse)
def report_by_dates(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    params = request.query_params
    date_from = parse_iso_date(params.get("date_from"), "date_from")
    date_to = parse_iso_date(params.get("date_to"), "date_to")
    try:
        model = ReportService(db, user.id).by_dates_report(
            date_from, date_to, parse_page(request)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    query = urlencode(
        {"date_from": date_from.isoformat(), "date_to": date_to.isoformat()}
    )
    return render_page(
        request,
        "reports/by_dates.html",
        "components/report_by_dates.html",
        {"user": user, "model": model, "query": query},
    )


@app.get("/reports/by-dates/export.csv")
def report_by_dates_csv(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    date_from = parse_iso_date(request.query_params.get("date_from"), "date_from")
    date_to = parse_iso_date(request.query_params.get("date_to"), "date_to")
    items = PayingItemService(db, user.id).all_in_dates(date_from, date_to)
    csv_text = CSVService(db, user.id).export(items)
    filename = f"report_{date_from}_{date_to}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/reports/by-dates/report.pdf")
def report_by_dates_pdf(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    date_from = parse_iso_date(request.query_params.get("date_from"), "date_from")
    date_to = parse_iso_date(request.query_params.get("date_to"), "date_to")
    try:
        from weasyprint import HTML
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
        ) from exc

    start_time = datetime.now()
    reports = ReportService(db, user.id)
    sums = reports.flow_sums(date_from, date_to)
    html = templates.env.get_template("reports/report_pdf.html").render(
        user=user,
        date_from=date_from,
        date_to=date_to,
        items=PayingItemService(db, user.id).all_in_dates(date_from, date_to),
        incoming_sum=sums[TypeOfFlow.income],
        outgo_sum=sums[TypeOfFlow.outgo],
        income_overall=reports.overall_list(date_from, date_to, TypeOfFlow.income),
        outgo_overall=reports.overall_list(date_from, date_to, TypeOfFlow.outgo),
        generated_at=datetime.now(),
    )
    pdf_bytes = HTML(string=html, base_url=str(request.base_url)).write_pdf()
    duration = (datetime.now() - start_time).total_seconds()
    logger.info(
        f"report_generated: user={user.id} period={date_from}to{date_to} "
        f"pdf_size_bytes={len(pdf_bytes)} duration={duration:.2f}s"
    )
    filename = f"home_accounting_{date_from}_{date_to}.pdf"
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(pdf_bytes)),
        },
    )


@app.get("/reports/all-categories", response_class=HTMLResponse)
def report_all_categories(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    params = request.query_params
    date_from = parse_iso_date(params.get("date_from"), "date_from")
    date_to = parse_iso_date(params.get("date_to"), "date_to")
    try:
        type_of_flow_id = int(params.get("type_of_flow_id") or 2)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid type of flow") from exc
    report = ReportService(db, user.id).overall_list(
        date_from, date_to, TypeOfFlow.from_id(type_of_flow_id)
    )
    return render(
        request,
        "components/report_all_categories.html",
        {"report": report, "type_of_flow_name": flow_name(type_of_flow_id)},
    )


@app.get("/reports/last-year-months", response_class=HTMLResponse)
def report_last_year_months(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    model = ReportService(db, user.id).last_year_months()
    return render_page(
        request,
        "reports/last_year_months.html",
        "components/report_last_year_months.html",
        {"user": user, "model": model},
    )


@app.get("/reports/items-by-month")
def report_items_by_month(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    month_date = parse_iso_date(request.query_params.get("date"), "date")
    date_from, date_to = month_range(month_date)
    query = urlencode(
        {"date_from": date_from.isoformat(), "date_to": date_to.isoformat()}
    )
    if not is_htmx(request):
        url = f"{app.url_path_for('report_by_dates')}?{query}"
        return RedirectResponse(url=url, status_code=303)
    model = ReportService(db, user.id).by_dates_report(date_from, date_to)
    return render(
        request,
        "components/report_by_dates.html",
        {"user": user, "model": model, "query": query},
    )


@app.get("/reports/subcategories", response_class=HTMLResponse)
def report_subcategories(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    params = request.query_params
    month_date = parse_iso_date(params.get("date"), "date")
    try:
        type_of_flow_id = int(params.get("type_of_flow_id") or 2)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid type of flow") from exc
    report = ReportService(db, user.id).subcategories_report(
        TypeOfFlow.from_id(type_of_flow_id), month_date
    )
    return render_page(
        request,
        "reports/subcategories.html",
        "components/report_subcategories.html",
        {
            "user": user,
            "report": report,
            "type_of_flow_name": flow_name(type_of_flow_id),
            "month_name": month_date.strftime("%B"),
        },
    )


# --- role administration --------------------------------------------------


@app.get("/admin/roles", response_class=HTMLResponse)
def roles_page(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    roles = RoleService(db).list_roles()
    return render(request, "admin/roles.html", {"user": user, "roles": roles})


@app.get("/admin/roles/create", response_class=HTMLResponse)
def create_role_page(request: Request, user: User = Depends(require_admin)):
    return render(
        request, "admin/role_create.html", {"user": user, "errors": [], "name": ""}
    )


@app.post("/admin/roles/create")
async def create_role(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    form = await checked_form(request, user.id)
    name = str(form.get("rolename") or "")
    try:
        RoleService(db).create(RoleIn(name=name))
    except PayloadError:
        errors = ["Role name is required"]
    except ValueError as exc:
        errors = [str(exc)]
    else:
        return RedirectResponse(url="/admin/roles", status_code=303)
    return render(
        request,
        "admin/role_create.html",
        {"user": user, "errors": errors, "name": name},
        status_code=400,
    )


@app.post("/admin/roles/{role_id}/delete")
async def delete_role(
    role_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    await checked_form(request, user.id)
    try:
        RoleService(db).delete(role_id)
    except ValueError as exc:
        return render(
            request, "error.html", {"user": user, "errors": [str(exc)]}, status_code=400
        )
    return RedirectResponse(url="/admin/roles", status_code=303)


@app.get("/admin/roles/{role_id}/edit", response_class=HTMLResponse)
def edit_role_page(
    role_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    try:
        model = RoleService(db).edit_model(role_id)
    except ValueError as exc:
        return render(
            request, "error.html", {"user": user, "errors": [str(exc)]}, status_code=404
        )
    return render(request, "admin/role_edit.html", {"user": user, "model": model})


@app.post("/admin/roles/edit")
async def edit_role(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    form = await checked_form(request, user.id)
    try:
        data = RoleModificationIn(
            role_name=str(form.get("role_name") or ""),
            ids_to_add=[int(v) for v in form.getlist("ids_to_add")] or None,
            ids_to_delete=[int(v) for v in form.getlist("ids_to_delete")] or None,
        )
        RoleService(db).modify(data)
    except (PayloadError, ValueError) as exc:
        db.rollback()
        return render(
            request, "error.html", {"user": user, "errors": [str(exc)]}, status_code=400
        )
    return RedirectResponse(url="/admin/roles", status_code=303)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
