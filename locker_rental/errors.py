# ============================================================
# errors.py — Erreurs de la couche service
# ------------------------------------------------------------
# Partagées par les services Rental, Payment et Hardware.
# L'API les traduit en codes HTTP :
#   ValidationError → 400, NotFoundError → 404,
#   StateConflictError → 409, GatewayError → 502
# ============================================================


class ServiceError(Exception):
    pass


# requête entrante qui viole une règle métier
class ValidationError(ServiceError):
    pass


# enregistrement absent du ledger
class NotFoundError(ServiceError):
    pass


# transition interdite depuis le statut courant
class StateConflictError(ServiceError):
    pass


# le fournisseur de paiement n'a pas pu émettre la facture
class GatewayError(ServiceError):
    def __init__(self, kind: str, detail: str = ""):
        super().__init__(f"{kind}: {detail}" if detail else kind)
        self.kind = kind
        self.detail = detail


# un handler de consumer demande la redélivrance du message
# (nack + requeue), comme pour une perte de connexion à la base
class TransientError(ServiceError):
    pass
