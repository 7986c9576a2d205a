from mangum import Mangum

from redemption.api import app

handler = Mangum(app)
