from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Integer
from sqlalchemy import LargeBinary
from sqlalchemy import String
from sqlalchemy import TypeDecorator

from .base import Base


class Uint256(TypeDecorator):
    impl = LargeBinary(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and not isinstance(value, bytes):
            value = value.to_bytes(32, byteorder="big")
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = int.from_bytes(value, byteorder="big")
        return value


class Submission(Base):
    """A signed UserOp accepted by the bundler, and what became of it."""

    __tablename__ = "submissions"

    id = Column(Integer, autoincrement=True, primary_key=True)
    user_op_hash = Column(String(length=66), unique=True, index=True)
    entry_point = Column(String(length=42))
    chain_id = Column(Integer)
    submitted_at = Column(DateTime, index=True, nullable=False)
    sponsored = Column(Boolean, nullable=False, default=False)

    # the UserOp as it was signed
    sender = Column(String(length=42), index=True)
    nonce = Column(Uint256)
    init_code = Column(LargeBinary)
    call_data = Column(LargeBinary)
    call_gas_limit = Column(Uint256)
    verification_gas_limit = Column(Uint256)
    pre_verification_gas = Column(Uint256)
    max_fee_per_gas = Column(Uint256)
    max_priority_fee_per_gas = Column(Uint256)
    paymaster_and_data = Column(LargeBinary)
    signature = Column(LargeBinary)

    # receipt, empty while pending
    success = Column(Boolean)
    tx_hash = Column(String(length=66))
    block_number = Column(Integer)
    actual_gas_cost = Column(Uint256)
    reason = Column(String)
    included_at = Column(DateTime)

    @property
    def is_pending(self) -> bool:
        return self.tx_hash is None

    def serialize(self):
        obj_dict = self.__dict__.copy()
        obj_dict.pop("_sa_instance_state", None)
        for key, value in obj_dict.items():
            if isinstance(value, bytes):
                obj_dict[key] = "0x" + value.hex()
            elif isinstance(value, int) and not isinstance(value, bool):
                obj_dict[key] = hex(value)
            elif hasattr(value, "isoformat"):
                obj_dict[key] = value.isoformat()
        return obj_dict
