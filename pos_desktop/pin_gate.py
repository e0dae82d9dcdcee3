from typing import Optional

import bcrypt

from .config import DeviceConfig


class StaffPinGate:
    """
    Shared staff PIN in front of the register. It records which PIN unlocked
    the device for attribution on orders; it is not access control.
    """

    def __init__(self, config: DeviceConfig):
        self.config = config
        self.active_staff: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool((self.config.staff_pin_hash or "").strip())

    def set_pin(self, pin: str) -> str:
        pin = (pin or "").strip()
        if len(pin) < 4 or not pin.isdigit():
            raise ValueError("pin must be at least 4 digits")
        ph = bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")
        self.config.staff_pin_hash = ph
        self.config.save()
        return ph

    def verify(self, pin: str) -> bool:
        if not self.configured:
            return True
        pin = (pin or "").strip()
        if not pin:
            return False
        try:
            return bcrypt.checkpw(pin.encode("utf-8"), self.config.staff_pin_hash.encode("utf-8"))
        except ValueError:
            return False

    def unlock(self, pin: str, staff: Optional[str] = None) -> bool:
        ok = self.verify(pin)
        if ok:
            self.active_staff = staff or ("pin" if self.configured else None)
        return ok

    def lock(self) -> None:
        self.active_staff = None
