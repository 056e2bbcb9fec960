from distributor.queries.common import *
from distributor.queries.chain import *
from distributor.queries.balances import *
