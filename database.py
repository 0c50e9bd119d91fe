"""
Storage layer

Storage is the contract request handlers depend on. Two backends implement it:

- MemoryStorage keeps everything in dicts behind one re-entrant lock. It is the
  default when DATABASE_URL is not set and is what the tests run against.
- MongoStorage keeps one collection per entity ("user", "address", "product",
  "order") and relies on single-document atomic updates.

The invariant-preserving operations (issue_otp, verify_and_clear_otp,
create_address/update_address with a default flag, set_default_address) must be
atomic in every backend; callers never sequence them by hand.
"""
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar

import structlog
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import Conflict, TooManyRequests
from schemas import (
    ORDER_STATUSES,
    Address,
    AddressCreate,
    Order,
    OrderItem,
    Product,
    ProductCreate,
    User,
)
from settings import Settings

logger = structlog.get_logger(__name__)

M = TypeVar("M")

ADMIN_SEED = {
    "phone": "+919999999999",
    "name": "Admin User",
    "email": "admin@madeinpune.com",
}

SEED_PRODUCTS = [
    {
        "name": "Premium Black Kurta",
        "description": "Handcrafted from premium cotton blend, this elegant black kurta combines traditional "
                       "Indian craftsmanship with modern style. Features a relaxed fit, classic collar, and "
                       "intricate button details.",
        "price": "2499.00",
        "image": "/attached_assets/generated_images/Black_premium_hoodie_product_194dcf64.png",
        "category": "kurta",
        "sizes": ["S", "M", "L", "XL", "XXL"],
        "in_stock": True,
        "featured": True,
    },
    {
        "name": "Essential White Cotton Shirt",
        "description": "A timeless wardrobe essential. Our premium white cotton shirt is made from 100% pure "
                       "Indian cotton with a classic collar and comfortable fit. Perfect for any occasion.",
        "price": "1299.00",
        "image": "/attached_assets/generated_images/White_modern_t-shirt_product_97925f47.png",
        "category": "shirt",
        "sizes": ["XS", "S", "M", "L", "XL"],
        "in_stock": True,
        "featured": True,
    },
    {
        "name": "Traditional Gray Kurta",
        "description": "Ultimate comfort meets traditional design. This kurta in charcoal gray features "
                       "elegant patterns, a spacious pocket, and soft handwoven fabric.",
        "price": "2799.00",
        "image": "/attached_assets/generated_images/Gray_oversized_hoodie_product_cf6d6803.png",
        "category": "kurta",
        "sizes": ["M", "L", "XL", "XXL"],
        "in_stock": True,
        "featured": False,
    },
    {
        "name": "Vibrant Orange Casual Shirt",
        "description": "Make a statement with our vibrant orange shirt. Premium fabric with a modern cut, "
                       "designed to add a pop of color to your collection. Perfect for festive occasions.",
        "price": "1499.00",
        "image": "/attached_assets/generated_images/Orange_accent_t-shirt_product_9ab28447.png",
        "category": "shirt",
        "sizes": ["S", "M", "L", "XL"],
        "in_stock": True,
        "featured": True,
    },
]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


class Storage(ABC):
    name = "storage"

    # ----------------------- Users -----------------------
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, phone: str, name: Optional[str] = None, email: Optional[str] = None,
                    is_admin: bool = False) -> User:
        """Create a user; raises Conflict if the phone is already registered."""

    @abstractmethod
    def update_user_profile(self, user_id: str, name: str, email: Optional[str] = None) -> Optional[User]:
        """Set name, and email when given. Returns None for an unknown user."""

    @abstractmethod
    def issue_otp(self, phone: str, code: str, expires_at: datetime, now: Optional[datetime] = None,
                  max_requests: int = 5) -> User:
        """Attach an OTP to the user with this phone, creating the user if absent.

        Replaces any previous code, resets otp_failures and increments
        otp_attempts. Once otp_attempts reaches max_requests a new code is only
        issued after the live one expires; until then TooManyRequests is raised.
        """

    @abstractmethod
    def verify_and_clear_otp(self, phone: str, code: str, now: datetime,
                             max_failures: int = 5) -> Optional[User]:
        """Consume the OTP if it matches and has not expired.

        On success the code, expiry and both counters are cleared and the
        updated user returned. A wrong guess against a live code increments
        otp_failures; the guess that reaches max_failures voids the code. Any
        failure returns None.
        """

    @abstractmethod
    def count_users(self) -> int: ...

    # ----------------------- Addresses -----------------------
    @abstractmethod
    def list_addresses(self, user_id: str) -> List[Address]:
        """The user's addresses, default first, then newest first."""

    @abstractmethod
    def get_address(self, address_id: str) -> Optional[Address]: ...

    @abstractmethod
    def create_address(self, user_id: str, data: AddressCreate) -> Address: ...

    @abstractmethod
    def update_address(self, address_id: str, changes: Dict[str, Any]) -> Optional[Address]: ...

    @abstractmethod
    def delete_address(self, address_id: str) -> bool:
        """Delete without promoting another address to default."""

    @abstractmethod
    def set_default_address(self, user_id: str, address_id: str) -> Optional[Address]:
        """Make address_id the user's only default. None if it is not the user's."""

    # ----------------------- Products -----------------------
    @abstractmethod
    def list_products(self, category: Optional[str] = None, featured: Optional[bool] = None,
                      q: Optional[str] = None) -> List[Product]: ...

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    def create_product(self, data: ProductCreate) -> Product: ...

    @abstractmethod
    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Optional[Product]: ...

    @abstractmethod
    def delete_product(self, product_id: str) -> bool: ...

    @abstractmethod
    def count_products(self) -> int: ...

    # ----------------------- Orders -----------------------
    @abstractmethod
    def list_orders(self, status: Optional[str] = None) -> List[Order]: ...

    @abstractmethod
    def list_user_orders(self, user_id: str) -> List[Order]: ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    def create_order(self, user_id: str, items: List[OrderItem], total_amount: str,
                     shipping_address: str, address_id: Optional[str] = None) -> Order:
        """Persist a new order with status and payment status "pending"."""

    @abstractmethod
    def update_order_status(self, order_id: str, status: str) -> Optional[Order]: ...

    @abstractmethod
    def count_orders_by_status(self) -> Dict[str, int]: ...

    @abstractmethod
    def health(self) -> Dict[str, Any]: ...

    # ----------------------- Seed -----------------------
    def seed(self) -> None:
        if self.get_user_by_phone(ADMIN_SEED["phone"]) is None:
            try:
                self.create_user(is_admin=True, **ADMIN_SEED)
            except Conflict:
                pass  # another process seeded it first
        if self.count_products() == 0:
            for product in SEED_PRODUCTS:
                self.create_product(ProductCreate(**product))
            logger.info("catalog_seeded", storage=self.name, products=len(SEED_PRODUCTS))


# ----------------------- In-memory backend -----------------------
def _newest_first(items):
    # dicts keep insertion order, which is creation order
    return list(reversed(list(items)))


class MemoryStorage(Storage):
    name = "memory"

    def __init__(self, seed: bool = True):
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._addresses: Dict[str, Address] = {}
        self._products: Dict[str, Product] = {}
        self._orders: Dict[str, Order] = {}
        if seed:
            self.seed()

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    def _find_user_by_phone(self, phone: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.phone == phone), None)

    # Users
    def get_user(self, user_id):
        with self._lock:
            return self._copy(self._users.get(user_id))

    def get_user_by_phone(self, phone):
        with self._lock:
            return self._copy(self._find_user_by_phone(phone))

    def create_user(self, phone, name=None, email=None, is_admin=False):
        with self._lock:
            if self._find_user_by_phone(phone) is not None:
                raise Conflict("Phone already registered")
            user = User(id=new_id(), phone=phone, name=name, email=email, is_admin=is_admin,
                        created_at=now_utc())
            self._users[user.id] = user
            return self._copy(user)

    def update_user_profile(self, user_id, name, email=None):
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            user.name = name
            if email is not None:
                user.email = email
            return self._copy(user)

    def issue_otp(self, phone, code, expires_at, now=None, max_requests=5):
        now = now or now_utc()
        with self._lock:
            user = self._find_user_by_phone(phone)
            if user is None:
                user = User(id=new_id(), phone=phone, created_at=now_utc())
                self._users[user.id] = user
            live = user.otp_code is not None and user.otp_expires_at is not None and user.otp_expires_at > now
            if live and user.otp_attempts >= max_requests:
                raise TooManyRequests()
            user.otp_code = code
            user.otp_expires_at = expires_at
            user.otp_attempts += 1
            user.otp_failures = 0
            return self._copy(user)

    def verify_and_clear_otp(self, phone, code, now, max_failures=5):
        with self._lock:
            user = self._find_user_by_phone(phone)
            if user is None or user.otp_code is None or user.otp_expires_at is None:
                return None
            if user.otp_expires_at <= now or user.otp_failures >= max_failures:
                return None
            if user.otp_code != code:
                user.otp_failures += 1
                if user.otp_failures >= max_failures:
                    user.otp_code = None
                    user.otp_expires_at = None
                return None
            user.otp_code = None
            user.otp_expires_at = None
            user.otp_attempts = 0
            user.otp_failures = 0
            return self._copy(user)

    def count_users(self):
        with self._lock:
            return len(self._users)

    # Addresses
    def _unset_other_defaults(self, user_id: str, keep_id: str) -> None:
        for address in self._addresses.values():
            if address.user_id == user_id and address.id != keep_id and address.is_default:
                address.is_default = False

    def list_addresses(self, user_id):
        with self._lock:
            own = [a for a in _newest_first(self._addresses.values()) if a.user_id == user_id]
            own.sort(key=lambda a: not a.is_default)
            return [self._copy(a) for a in own]

    def get_address(self, address_id):
        with self._lock:
            return self._copy(self._addresses.get(address_id))

    def create_address(self, user_id, data):
        with self._lock:
            address = Address(id=new_id(), user_id=user_id, created_at=now_utc(), **data.model_dump())
            if address.is_default:
                self._unset_other_defaults(user_id, address.id)
            self._addresses[address.id] = address
            return self._copy(address)

    def update_address(self, address_id, changes):
        with self._lock:
            address = self._addresses.get(address_id)
            if address is None:
                return None
            updated = address.model_copy(update=changes)
            if changes.get("is_default") is True:
                self._unset_other_defaults(updated.user_id, address_id)
            self._addresses[address_id] = updated
            return self._copy(updated)

    def delete_address(self, address_id):
        with self._lock:
            return self._addresses.pop(address_id, None) is not None

    def set_default_address(self, user_id, address_id):
        with self._lock:
            address = self._addresses.get(address_id)
            if address is None or address.user_id != user_id:
                return None
            self._unset_other_defaults(user_id, address_id)
            address.is_default = True
            return self._copy(address)

    # Products
    def list_products(self, category=None, featured=None, q=None):
        with self._lock:
            items = _newest_first(self._products.values())
        if category:
            items = [p for p in items if p.category == category]
        if featured is not None:
            items = [p for p in items if p.featured == featured]
        if q:
            needle = q.lower()
            items = [p for p in items if needle in p.name.lower()]
        return [self._copy(p) for p in items]

    def get_product(self, product_id):
        with self._lock:
            return self._copy(self._products.get(product_id))

    def create_product(self, data):
        with self._lock:
            product = Product(id=new_id(), created_at=now_utc(), **data.model_dump())
            self._products[product.id] = product
            return self._copy(product)

    def update_product(self, product_id, changes):
        with self._lock:
            product = self._products.get(product_id)
            if product is None:
                return None
            updated = product.model_copy(update=changes)
            self._products[product_id] = updated
            return self._copy(updated)

    def delete_product(self, product_id):
        with self._lock:
            return self._products.pop(product_id, None) is not None

    def count_products(self):
        with self._lock:
            return len(self._products)

    # Orders
    def list_orders(self, status=None):
        with self._lock:
            items = _newest_first(self._orders.values())
            return [self._copy(o) for o in items if status is None or o.status == status]

    def list_user_orders(self, user_id):
        with self._lock:
            return [self._copy(o) for o in _newest_first(self._orders.values()) if o.user_id == user_id]

    def get_order(self, order_id):
        with self._lock:
            return self._copy(self._orders.get(order_id))

    def create_order(self, user_id, items, total_amount, shipping_address, address_id=None):
        order = Order(
            id=new_id(),
            user_id=user_id,
            items=[i.model_copy(deep=True) for i in items],
            total_amount=total_amount,
            status="pending",
            address_id=address_id,
            shipping_address=shipping_address,
            payment_status="pending",
            created_at=now_utc(),
        )
        with self._lock:
            self._orders[order.id] = order
            return self._copy(order)

    def update_order_status(self, order_id, status):
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            order.status = status
            return self._copy(order)

    def count_orders_by_status(self):
        counts = {s: 0 for s in ORDER_STATUSES}
        with self._lock:
            for order in self._orders.values():
                counts[order.status] += 1
        return counts

    def health(self):
        with self._lock:
            return {
                "storage": self.name,
                "connection_status": "Connected",
                "collections": {
                    "user": len(self._users),
                    "address": len(self._addresses),
                    "product": len(self._products),
                    "order": len(self._orders),
                },
            }


# ----------------------- MongoDB backend -----------------------
def _oid(value: str) -> Optional[ObjectId]:
    return ObjectId(value) if ObjectId.is_valid(value) else None


def _bson_dt(value: datetime) -> datetime:
    # BSON dates are naive UTC; writes and filters use the same form
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _load(model: Type[M], doc: Optional[Dict[str, Any]]) -> Optional[M]:
    if not doc:
        return None
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    for key, value in data.items():
        if isinstance(value, datetime) and value.tzinfo is None:
            data[key] = value.replace(tzinfo=timezone.utc)
    return model.model_validate(data)


NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


class MongoStorage(Storage):
    name = "mongodb"

    def __init__(self, url: Optional[str] = None, database_name: str = "storefront", seed: bool = True,
                 client: Optional[MongoClient] = None):
        self._client = client if client is not None else MongoClient(url, tz_aware=True)
        self.db = self._client[database_name]
        self.db["user"].create_index("phone", unique=True)
        self.db["address"].create_index([("user_id", ASCENDING)])
        self.db["order"].create_index([("user_id", ASCENDING)])
        if seed:
            self.seed()

    def create_document(self, collection: str, data: Dict[str, Any]) -> ObjectId:
        data = {**data, "created_at": _bson_dt(now_utc())}
        return self.db[collection].insert_one(data).inserted_id

    def _get(self, collection: str, model, doc_id: str):
        oid = _oid(doc_id)
        if oid is None:
            return None
        return _load(model, self.db[collection].find_one({"_id": oid}))

    # Users
    def get_user(self, user_id):
        return self._get("user", User, user_id)

    def get_user_by_phone(self, phone):
        return _load(User, self.db["user"].find_one({"phone": phone}))

    def create_user(self, phone, name=None, email=None, is_admin=False):
        doc = {
            "phone": phone,
            "name": name,
            "email": email,
            "is_admin": is_admin,
            "otp_code": None,
            "otp_expires_at": None,
            "otp_attempts": 0,
            "otp_failures": 0,
        }
        try:
            _id = self.create_document("user", doc)
        except DuplicateKeyError:
            raise Conflict("Phone already registered")
        return self.get_user(str(_id))

    def update_user_profile(self, user_id, name, email=None):
        oid = _oid(user_id)
        if oid is None:
            return None
        update = {"name": name}
        if email is not None:
            update["email"] = email
        doc = self.db["user"].find_one_and_update(
            {"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        return _load(User, doc)

    def issue_otp(self, phone, code, expires_at, now=None, max_requests=5):
        now = _bson_dt(now or now_utc())
        try:
            self.db["user"].update_one(
                {"phone": phone},
                {"$setOnInsert": {
                    "name": None, "email": None, "is_admin": False,
                    "otp_code": None, "otp_expires_at": None, "otp_attempts": 0, "otp_failures": 0,
                    "created_at": now,
                }},
                upsert=True,
            )
        except DuplicateKeyError:
            pass  # lost an upsert race on the unique phone index; the user exists now

        doc = self.db["user"].find_one_and_update(
            {"phone": phone, "$or": [
                {"otp_attempts": {"$lt": max_requests}},
                {"otp_expires_at": None},
                {"otp_expires_at": {"$lte": now}},
            ]},
            {
                "$set": {"otp_code": code, "otp_expires_at": _bson_dt(expires_at), "otp_failures": 0},
                "$inc": {"otp_attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise TooManyRequests()
        return _load(User, doc)

    def verify_and_clear_otp(self, phone, code, now, max_failures=5):
        now = _bson_dt(now)
        users = self.db["user"]
        doc = users.find_one_and_update(
            {"phone": phone, "otp_code": code, "otp_expires_at": {"$gt": now},
             "otp_failures": {"$lt": max_failures}},
            {"$set": {"otp_code": None, "otp_expires_at": None, "otp_attempts": 0, "otp_failures": 0}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return _load(User, doc)

        missed = users.find_one_and_update(
            {"phone": phone, "otp_code": {"$ne": None}, "otp_expires_at": {"$gt": now}},
            {"$inc": {"otp_failures": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if missed is not None and missed["otp_failures"] >= max_failures:
            # keyed on the code so a freshly issued one survives
            users.update_one(
                {"_id": missed["_id"], "otp_code": missed["otp_code"]},
                {"$set": {"otp_code": None, "otp_expires_at": None}},
            )
        return None

    def count_users(self):
        return self.db["user"].count_documents({})

    # Addresses
    def _unset_other_defaults(self, user_id: str, keep: ObjectId) -> None:
        # Runs after the target is flagged, so racing writers can leave zero
        # defaults but never two.
        self.db["address"].update_many(
            {"user_id": user_id, "_id": {"$ne": keep}, "is_default": True},
            {"$set": {"is_default": False}},
        )

    def list_addresses(self, user_id):
        docs = self.db["address"].find({"user_id": user_id}).sort(
            [("is_default", DESCENDING)] + NEWEST_FIRST
        )
        return [_load(Address, d) for d in docs]

    def get_address(self, address_id):
        return self._get("address", Address, address_id)

    def create_address(self, user_id, data):
        _id = self.create_document("address", {"user_id": user_id, **data.model_dump()})
        if data.is_default:
            self._unset_other_defaults(user_id, _id)
        return self.get_address(str(_id))

    def update_address(self, address_id, changes):
        oid = _oid(address_id)
        if oid is None:
            return None
        if changes:
            doc = self.db["address"].find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        else:
            doc = self.db["address"].find_one({"_id": oid})
        if doc is None:
            return None
        if changes.get("is_default") is True:
            self._unset_other_defaults(doc["user_id"], oid)
        return _load(Address, doc)

    def delete_address(self, address_id):
        oid = _oid(address_id)
        if oid is None:
            return False
        return self.db["address"].delete_one({"_id": oid}).deleted_count > 0

    def set_default_address(self, user_id, address_id):
        oid = _oid(address_id)
        if oid is None:
            return None
        doc = self.db["address"].find_one_and_update(
            {"_id": oid, "user_id": user_id},
            {"$set": {"is_default": True}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        self._unset_other_defaults(user_id, oid)
        return _load(Address, doc)

    # Products
    def list_products(self, category=None, featured=None, q=None):
        filt: Dict[str, Any] = {}
        if category:
            filt["category"] = category
        if featured is not None:
            filt["featured"] = featured
        if q:
            filt["name"] = {"$regex": re.escape(q), "$options": "i"}
        return [_load(Product, d) for d in self.db["product"].find(filt).sort(NEWEST_FIRST)]

    def get_product(self, product_id):
        return self._get("product", Product, product_id)

    def create_product(self, data):
        _id = self.create_document("product", data.model_dump())
        return self.get_product(str(_id))

    def update_product(self, product_id, changes):
        oid = _oid(product_id)
        if oid is None:
            return None
        if not changes:
            return self.get_product(product_id)
        doc = self.db["product"].find_one_and_update(
            {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        return _load(Product, doc)

    def delete_product(self, product_id):
        oid = _oid(product_id)
        if oid is None:
            return False
        return self.db["product"].delete_one({"_id": oid}).deleted_count > 0

    def count_products(self):
        return self.db["product"].count_documents({})

    # Orders
    def list_orders(self, status=None):
        filt = {"status": status} if status else {}
        return [_load(Order, d) for d in self.db["order"].find(filt).sort(NEWEST_FIRST)]

    def list_user_orders(self, user_id):
        return [_load(Order, d) for d in self.db["order"].find({"user_id": user_id}).sort(NEWEST_FIRST)]

    def get_order(self, order_id):
        return self._get("order", Order, order_id)

    def create_order(self, user_id, items, total_amount, shipping_address, address_id=None):
        _id = self.create_document("order", {
            "user_id": user_id,
            "items": [i.model_dump() for i in items],
            "total_amount": total_amount,
            "status": "pending",
            "address_id": address_id,
            "shipping_address": shipping_address,
            "payment_status": "pending",
        })
        return self.get_order(str(_id))

    def update_order_status(self, order_id, status):
        oid = _oid(order_id)
        if oid is None:
            return None
        doc = self.db["order"].find_one_and_update(
            {"_id": oid}, {"$set": {"status": status}}, return_document=ReturnDocument.AFTER
        )
        return _load(Order, doc)

    def count_orders_by_status(self):
        counts = {s: 0 for s in ORDER_STATUSES}
        for row in self.db["order"].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
            counts[row["_id"]] = row["count"]
        return counts

    def health(self):
        return {
            "storage": self.name,
            "database_name": self.db.name,
            "connection_status": "Connected",
            "collections": {
                name: self.db[name].count_documents({}) for name in ("user", "address", "product", "order")
            },
        }


def create_storage(settings: Settings) -> Storage:
    if settings.database_url:
        logger.info("storage_selected", storage="mongodb", database=settings.database_name)
        return MongoStorage(settings.database_url, settings.database_name)
    logger.info("storage_selected", storage="memory")
    return MemoryStorage()
