from purchasesync.stores.sandbox import SandboxPaymentQueue

__all__ = ["SandboxPaymentQueue"]
