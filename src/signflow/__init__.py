"""signflow: contract signing with drawn or uploaded signatures.

Operators create contracts and send signing links; each signatory draws
or uploads a signature, optionally with geolocation, and the contract
becomes ``signed`` once everyone has signed. Signed contracts yield an
evidence PDF with a verification code.
"""

__version__ = "0.1.0"
