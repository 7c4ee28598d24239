# main.py

import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from vdeck_api.config import Settings
from vdeck_api.database import Database
from vdeck_api.errors import InsufficientStockError, OrderError, OrderValidationError, PersistenceError
from vdeck_api.logger import log_error, log_info, log_warning
from vdeck_api.orders import OrderService
from vdeck_api.schemas import ProductCreate, ProductUpdate, parse_order_request
from vdeck_api.uploads import URL_PREFIX, save_upload


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """
    Build the API.

    `database` can be passed in (tests hand over a handle on an in-memory client);
    otherwise one is created from `settings` when the app starts.
    """
    settings = settings or Settings.from_env()

    # Connect to MongoDB on startup and close the connection on shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_info("Connecting to MongoDB...")
        db = database or Database(settings)
        # startup fails if the database never answers
        await db.connect()
        Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
        # store the handle and the order service in app state for use in endpoints
        app.state.db = db
        app.state.order_service = OrderService(db)
        log_info("Starting up the VDECK API...")

        yield
        # on shutdown, close the database connection
        log_info("Shutting down the VDECK API...")
        app.state.order_service = None
        app.state.db = None
        db.close()

    app = FastAPI(title="VDECK API", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up a middleware to generate request_id for each request and log it
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """
        Use the Request-ID header when the client sends one, otherwise generate it, and log the request.
        """
        request_id = request.headers.get("Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        log_info(f"Received request: {request.method} {request.url}", request_id=request_id)

        response = await call_next(request)
        # add the request_id to the response headers for tracking
        response.headers["Request-ID"] = request_id
        log_info(f"Completed request: {request.method} {request.url} with status {response.status_code}", request_id=request_id)
        return response

    register_error_handlers(app)
    register_routes(app)

    # Serve uploaded files
    app.mount(URL_PREFIX, StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")
    return app


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "N/A")


def register_error_handlers(app: FastAPI):
    """ Map errors to status codes. Every error body is {"message": ...}. """

    @app.exception_handler(OrderValidationError)
    async def handle_validation_error(request: Request, exc: OrderValidationError):
        log_warning(f"Rejected request: {exc.message}", request_id=_request_id(request))
        return JSONResponse(status_code=400, content={"message": exc.message})

    @app.exception_handler(InsufficientStockError)
    async def handle_insufficient_stock(request: Request, exc: InsufficientStockError):
        return JSONResponse(status_code=409, content={"message": exc.message})

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError):
        log_error(f"Database error during {exc.step}: {exc.message} ({exc.__cause__})", request_id=_request_id(request))
        message = exc.message
        if exc.stock_restored is not None:
            message += " Stock was restored." if exc.stock_restored else " Stock could not be restored."
        return JSONResponse(status_code=500, content={"message": message})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            location = ".".join(str(part) for part in errors[0]["loc"] if part != "body")
            message = f"{location}: {errors[0]['msg']}" if location else errors[0]["msg"]
        else:
            message = "Invalid request."
        return JSONResponse(status_code=400, content={"message": message})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        # unmatched routes come through here with Starlette's default detail
        message = "Route Not Found" if exc.status_code == 404 and exc.detail == "Not Found" else exc.detail
        return JSONResponse(status_code=exc.status_code, content={"message": message}, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        log_error(f"Unexpected error on {request.method} {request.url.path}: {exc}", request_id=_request_id(request), exc_info=True)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})


def register_routes(app: FastAPI):

    @app.get("/", response_class=PlainTextResponse)
    def index():
        return "VDECK API is running..."

    # API: /api/orders - POST to place an order and deduct stock
    @app.post("/api/orders")
    async def place_order(request: Request):
        """
        Place an order.

        Accepts a JSON body or a form post (where items usually arrive as a JSON string).
        Validation happens before anything is written. Stock for all line items is deducted
        in one batch, then the order is saved.
        """
        request_id = _request_id(request)
        payload = await _read_payload(request)
        order_request = parse_order_request(payload)

        try:
            order = await request.app.state.order_service.place_order(order_request, request_id=request_id)
        except OrderError:
            raise
        except Exception as e:
            log_error(f"Order placement error: {e}", request_id=request_id, exc_info=True)
            raise HTTPException(status_code=500, detail="Internal server error")

        return JSONResponse(status_code=201, content={"message": "Order placed successfully!", "order": order.to_response()})

    # API: /api/orders - GET to list orders, newest first
    @app.get("/api/orders")
    async def list_orders(request: Request):
        orders = await request.app.state.db.orders.list()
        return [order.to_response() for order in orders]

    # API: /api/orders/{order_id} - GET to read a specific order
    @app.get("/api/orders/{order_id}")
    async def read_order(request: Request, order_id: str):
        order = await request.app.state.db.orders.get(order_id)
        if order is None:
            log_warning(f"Order not found: {order_id}", request_id=_request_id(request))
            raise HTTPException(status_code=404, detail="Order not found.")
        return order.to_response()

    @app.get("/api/products")
    async def list_products(request: Request):
        products = await request.app.state.db.products.list()
        return [product.model_dump() for product in products]

    @app.get("/api/products/{product_id}")
    async def read_product(request: Request, product_id: str):
        product = await request.app.state.db.products.get(product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found.")
        return product.model_dump()

    @app.post("/api/products")
    async def create_product(request: Request, data: ProductCreate):
        product = await request.app.state.db.products.create(data)
        log_info(f"Product created: {product.id}", request_id=_request_id(request))
        return JSONResponse(status_code=201, content=product.model_dump())

    @app.put("/api/products/{product_id}")
    async def update_product(request: Request, product_id: str, data: ProductUpdate):
        product = await request.app.state.db.products.update(product_id, data)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found.")
        log_info(f"Product updated: {product_id}", request_id=_request_id(request))
        return product.model_dump()

    @app.delete("/api/products/{product_id}")
    async def delete_product(request: Request, product_id: str):
        if not await request.app.state.db.products.delete(product_id):
            raise HTTPException(status_code=404, detail="Product not found.")
        log_info(f"Product deleted: {product_id}", request_id=_request_id(request))
        return {"message": "Product deleted."}

    # API: /api/upload - POST a single image, returns where it is served from
    @app.post("/api/upload")
    def upload_image(request: Request, image: Optional[UploadFile] = File(None)):
        if image is None or not image.filename:
            raise HTTPException(status_code=400, detail="No file uploaded")
        image_url = save_upload(image, request.app.state.settings.upload_dir)
        log_info(f"Image uploaded: {image_url}", request_id=_request_id(request))
        return {"imageUrl": image_url}


async def _read_payload(request: Request):
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        return dict(form)
    try:
        return await request.json()
    except ValueError:
        raise OrderValidationError("Request body must be valid JSON.")


app = create_app()
